"""wavegate data models: all Pydantic v2, all frozen (immutable)."""

from wavegate.models.approvals import ApprovalRequest, ApprovalStatus, ExpiryPolicy
from wavegate.models.changes import FileChange, TransformationKind, TransformationRequest
from wavegate.models.checkpoints import (
    Checkpoint,
    RollbackPoint,
    RollbackResult,
    RollbackScope,
)
from wavegate.models.config import EngineConfig, PlannerLimits, load_engine_config
from wavegate.models.events import EventKind, ProgressEvent
from wavegate.models.ledger import LedgerEntry, UnitKind
from wavegate.models.notifications import Notification, NotificationKind
from wavegate.models.plan import (
    TERMINAL_BATCH_STATES,
    VALID_TRANSITIONS,
    WAVE_TRANSITIONS,
    Batch,
    BatchStatus,
    PlanStatus,
    TransformationPlan,
    Wave,
    WaveStatus,
)
from wavegate.models.risk import RiskConfig, RiskFactor, RiskLevel, RiskScore, RiskSignals
from wavegate.models.verification import (
    BehaviorDifference,
    DifferenceKind,
    FunctionShape,
    Severity,
    StructuralRepresentation,
    TestRunResult,
    VerificationReport,
)

__all__ = [
    # changes
    "TransformationKind",
    "FileChange",
    "TransformationRequest",
    # risk
    "RiskLevel",
    "RiskFactor",
    "RiskScore",
    "RiskSignals",
    "RiskConfig",
    # plan
    "BatchStatus",
    "WaveStatus",
    "PlanStatus",
    "VALID_TRANSITIONS",
    "WAVE_TRANSITIONS",
    "TERMINAL_BATCH_STATES",
    "Batch",
    "Wave",
    "TransformationPlan",
    # checkpoints
    "Checkpoint",
    "RollbackScope",
    "RollbackPoint",
    "RollbackResult",
    # approvals
    "ApprovalStatus",
    "ExpiryPolicy",
    "ApprovalRequest",
    # verification
    "Severity",
    "DifferenceKind",
    "BehaviorDifference",
    "FunctionShape",
    "StructuralRepresentation",
    "VerificationReport",
    "TestRunResult",
    # ledger
    "UnitKind",
    "LedgerEntry",
    # events
    "EventKind",
    "ProgressEvent",
    # notifications
    "NotificationKind",
    "Notification",
    # config
    "PlannerLimits",
    "EngineConfig",
    "load_engine_config",
]
