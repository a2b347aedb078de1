"""Error taxonomy for the transformation engine.

Every error except ``RollbackVerificationFailed`` is recovered by the
Orchestrator: it restores a known-good state, records the reason on the
batch, and continues or halts the plan cleanly.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from wavegate.models.approvals import ApprovalRequest
    from wavegate.models.verification import BehaviorDifference


class TransformationError(RuntimeError):
    """Base class for all engine errors."""


class ConfigurationError(TransformationError):
    """Raised when the engine configuration violates a hard constraint."""


class PlanNotFoundError(TransformationError, KeyError):
    """Raised when a plan_id is unknown to the ledger."""


class PlanningError(TransformationError):
    """Raised before any file is touched when no valid plan exists."""


class CyclicDependencyError(PlanningError):
    """Raised when the change dependency graph contains a cycle."""

    def __init__(self, message: str, cycle_paths: list[str] | None = None) -> None:
        super().__init__(message)
        self.cycle_paths = cycle_paths or []


class ApplyError(TransformationError):
    """Raised when a batch cannot be applied or committed."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class VerificationFailure(TransformationError):
    """Raised when a batch has CRITICAL behavior differences."""

    def __init__(self, message: str, differences: list[BehaviorDifference]) -> None:
        super().__init__(message)
        self.differences = differences


class TestFailure(TransformationError):
    """Raised when the test runner reports failure or times out."""

    __test__ = False

    def __init__(self, message: str, failures: list[str] | None = None, timed_out: bool = False) -> None:
        super().__init__(message)
        self.failures = failures or []
        self.timed_out = timed_out


class ApprovalRejected(TransformationError):
    """Raised when an approver rejects a gated unit."""

    def __init__(self, message: str, request: ApprovalRequest) -> None:
        super().__init__(message)
        self.request = request


class ApprovalExpired(TransformationError):
    """Raised when an approval deadline passes with no decision."""

    def __init__(self, message: str, request: ApprovalRequest) -> None:
        super().__init__(message)
        self.request = request


class RollbackVerificationFailed(TransformationError):
    """Restored files are not byte-identical to their snapshot.

    Fatal: the engine can no longer trust the working tree.  Must be
    escalated to an operator, never swallowed.
    """

    def __init__(self, message: str, mismatched_paths: list[str]) -> None:
        super().__init__(message)
        self.mismatched_paths = mismatched_paths
