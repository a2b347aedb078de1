"""Transformation plan models: waves of batches, plus their state machines.

A plan is immutable once created; re-planning produces a new plan.
Live statuses are not stored on these models.  They are derived from
the Run Ledger by ``BatchMachine`` and ``ProgressTracker``.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from wavegate.models.changes import FileChange
from wavegate.models.risk import RiskLevel, RiskScore


class BatchStatus(str, Enum):
    """Per-batch lifecycle state."""

    PENDING = "pending"
    CHECKPOINTED = "checkpointed"
    APPLYING = "applying"
    VERIFYING = "verifying"
    TESTING = "testing"
    AWAITING_APPROVAL = "awaiting_approval"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    BLOCKED = "blocked"


# Valid state transitions: enforced structurally by BatchMachine.
# COMMITTED -> ROLLED_BACK is the operator's partial-restore path.
# BLOCKED -> PENDING is the operator resuming a paused wave.
# PENDING -> ROLLED_BACK is a batch whose files could not be checkpointed.
VALID_TRANSITIONS: dict[BatchStatus, set[BatchStatus]] = {
    BatchStatus.PENDING: {
        BatchStatus.CHECKPOINTED,
        BatchStatus.ROLLED_BACK,
        BatchStatus.BLOCKED,
        BatchStatus.FAILED,
    },
    BatchStatus.CHECKPOINTED: {BatchStatus.APPLYING, BatchStatus.ROLLED_BACK, BatchStatus.FAILED},
    BatchStatus.APPLYING: {BatchStatus.VERIFYING, BatchStatus.ROLLED_BACK, BatchStatus.FAILED},
    BatchStatus.VERIFYING: {BatchStatus.TESTING, BatchStatus.ROLLED_BACK, BatchStatus.FAILED},
    BatchStatus.TESTING: {
        BatchStatus.AWAITING_APPROVAL,
        BatchStatus.COMMITTED,
        BatchStatus.ROLLED_BACK,
        BatchStatus.FAILED,
    },
    BatchStatus.AWAITING_APPROVAL: {
        BatchStatus.COMMITTED,
        BatchStatus.ROLLED_BACK,
        BatchStatus.FAILED,
    },
    BatchStatus.COMMITTED: {BatchStatus.ROLLED_BACK, BatchStatus.FAILED},
    BatchStatus.ROLLED_BACK: set(),  # terminal
    BatchStatus.FAILED: set(),  # terminal
    BatchStatus.BLOCKED: {BatchStatus.PENDING},
}

TERMINAL_BATCH_STATES: frozenset[BatchStatus] = frozenset({
    BatchStatus.COMMITTED,
    BatchStatus.ROLLED_BACK,
    BatchStatus.FAILED,
    BatchStatus.BLOCKED,
})

# The window during which the codebase lease is held.
LOCKED_BATCH_STATES: frozenset[BatchStatus] = frozenset({
    BatchStatus.APPLYING,
    BatchStatus.VERIFYING,
    BatchStatus.TESTING,
})


class WaveStatus(str, Enum):
    """Wave-level state; only COMPLETED satisfies a dependent wave."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    PAUSED = "paused"
    BLOCKED = "blocked"


WAVE_TRANSITIONS: dict[WaveStatus, set[WaveStatus]] = {
    WaveStatus.PENDING: {WaveStatus.RUNNING, WaveStatus.BLOCKED},
    WaveStatus.RUNNING: {
        WaveStatus.COMPLETED,
        WaveStatus.ROLLED_BACK,
        WaveStatus.PAUSED,
        WaveStatus.BLOCKED,
    },
    WaveStatus.PAUSED: {WaveStatus.RUNNING, WaveStatus.ROLLED_BACK},
    WaveStatus.COMPLETED: {WaveStatus.ROLLED_BACK},
    WaveStatus.ROLLED_BACK: set(),
    WaveStatus.BLOCKED: {WaveStatus.PENDING},
}


class PlanStatus(str, Enum):
    """Overall plan state as reported to callers."""

    PLANNED = "planned"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    PAUSED = "paused"
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    HALTED = "halted"


class Batch(BaseModel):
    """Smallest independently checkpointed and rollback-able unit."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    order: int
    files: list[FileChange]
    risk: RiskScore
    estimated_lines_changed: int = 0

    @property
    def risk_level(self) -> RiskLevel:
        return self.risk.level

    @property
    def paths(self) -> list[str]:
        return [change.path for change in self.files]

    @property
    def requires_approval(self) -> bool:
        return self.risk.requires_manual_approval


class Wave(BaseModel):
    """Ordered group of batches sharing a dependency tier."""

    model_config = ConfigDict(frozen=True)

    wave_id: str
    order: int
    batches: list[Batch] = []
    prerequisite_wave_ids: list[str] = []
    risk: RiskScore
    boundary_reason: str = ""

    @property
    def paths(self) -> list[str]:
        return [path for batch in self.batches for path in batch.paths]


class TransformationPlan(BaseModel):
    """An ordered sequence of waves; owns its waves exclusively."""

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(
        default_factory=lambda: (
            f"tp-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        )
    )
    request_id: str = ""
    title: str = ""
    branch: str = "wavegate/transform"
    feature_flag_key: str | None = None
    waves: list[Wave] = []
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def batches(self) -> list[Batch]:
        return [batch for wave in self.waves for batch in wave.batches]

    @property
    def is_empty(self) -> bool:
        return not self.waves

    def get_wave(self, wave_id: str) -> Wave:
        for wave in self.waves:
            if wave.wave_id == wave_id:
                return wave
        raise KeyError(wave_id)

    def get_batch(self, batch_id: str) -> Batch:
        for batch in self.batches:
            if batch.batch_id == batch_id:
                return batch
        raise KeyError(batch_id)

    def wave_of(self, batch_id: str) -> Wave:
        for wave in self.waves:
            if any(b.batch_id == batch_id for b in wave.batches):
                return wave
        raise KeyError(batch_id)
