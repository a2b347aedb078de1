"""Deterministic batch and wave state machines.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS / WAVE_TRANSITIONS)
- The commit guard: a batch reaches COMMITTED only with passing tests,
  no CRITICAL behavior difference, and (if gated) an APPROVED request
- Every transition recorded in the Run Ledger

State is cached in memory and rebuilt from the ledger on first access,
so a new process resumes exactly where the previous one stopped.
"""

from __future__ import annotations

import threading
from typing import Any

from pydantic import BaseModel, ConfigDict

from wavegate.core.run_ledger import RunLedger
from wavegate.models.ledger import LedgerEntry, UnitKind
from wavegate.models.plan import (
    VALID_TRANSITIONS,
    WAVE_TRANSITIONS,
    BatchStatus,
    PlanStatus,
    WaveStatus,
)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class CommitGuardError(RuntimeError):
    """Raised when a batch is moved to COMMITTED without sufficient evidence."""


class CommitEvidence(BaseModel):
    """What a batch has proven by the time it asks to commit."""

    model_config = ConfigDict(frozen=True)

    tests_passed: bool
    critical_differences: int = 0
    approval_required: bool = False
    approval_granted: bool = False

    def violations(self) -> list[str]:
        problems = []
        if not self.tests_passed:
            problems.append("tests did not pass")
        if self.critical_differences:
            problems.append(f"{self.critical_differences} critical behavior difference(s)")
        if self.approval_required and not self.approval_granted:
            problems.append("approval required but not granted")
        return problems


class BatchMachine:
    """Enforces the batch/wave state machines over the Run Ledger.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger
        self._lock = threading.RLock()
        # plan_id -> {batch_id -> BatchStatus}
        self._batches: dict[str, dict[str, BatchStatus]] = {}
        # plan_id -> {wave_id -> WaveStatus}
        self._waves: dict[str, dict[str, WaveStatus]] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def _ensure_loaded(self, plan_id: str) -> None:
        if plan_id in self._batches:
            return
        self._batches[plan_id] = {
            unit: BatchStatus(state)
            for unit, state in self._ledger.latest_states(plan_id, UnitKind.BATCH).items()
        }
        self._waves[plan_id] = {
            unit: WaveStatus(state)
            for unit, state in self._ledger.latest_states(plan_id, UnitKind.WAVE).items()
        }

    def get_state(self, plan_id: str, batch_id: str) -> BatchStatus:
        with self._lock:
            self._ensure_loaded(plan_id)
            return self._batches[plan_id].get(batch_id, BatchStatus.PENDING)

    def get_all_states(self, plan_id: str) -> dict[str, BatchStatus]:
        with self._lock:
            self._ensure_loaded(plan_id)
            return dict(self._batches[plan_id])

    def get_wave_state(self, plan_id: str, wave_id: str) -> WaveStatus:
        with self._lock:
            self._ensure_loaded(plan_id)
            return self._waves[plan_id].get(wave_id, WaveStatus.PENDING)

    def get_plan_status(self, plan_id: str) -> PlanStatus | None:
        """Latest recorded plan status, or None if the plan has no entries."""
        for entry in reversed(self._ledger.get_plan_entries(plan_id)):
            if entry.unit_kind == UnitKind.PLAN:
                return PlanStatus(entry.to_state)
        return None

    def forget(self, plan_id: str) -> None:
        """Drop the cache for a plan; the next access rebuilds from the ledger."""
        with self._lock:
            self._batches.pop(plan_id, None)
            self._waves.pop(plan_id, None)

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    @staticmethod
    def guard_commit(batch_id: str, evidence: CommitEvidence | None) -> None:
        """Raise ``CommitGuardError`` unless *evidence* permits a commit."""
        if evidence is None:
            raise CommitGuardError(f"Cannot commit {batch_id}: no commit evidence")
        problems = evidence.violations()
        if problems:
            raise CommitGuardError(f"Cannot commit {batch_id}: {'; '.join(problems)}")

    def transition(
        self,
        plan_id: str,
        batch_id: str,
        target_state: BatchStatus,
        *,
        reason: str = "",
        link: str = "",
        artifact_references: list[str] | None = None,
        details: dict[str, Any] | None = None,
        evidence: CommitEvidence | None = None,
    ) -> LedgerEntry:
        """Transition a batch, recording it in the ledger.

        Returns the sealed LedgerEntry.
        """
        with self._lock:
            self._ensure_loaded(plan_id)
            current = self._batches[plan_id].get(batch_id, BatchStatus.PENDING)

            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {batch_id} from {current.value} to {target_state.value}. "
                    f"Allowed: {sorted(s.value for s in allowed)}"
                )

            if target_state == BatchStatus.COMMITTED:
                self.guard_commit(batch_id, evidence)

            sealed = self._ledger.append(
                LedgerEntry(
                    plan_id=plan_id,
                    unit_id=batch_id,
                    unit_kind=UnitKind.BATCH,
                    state_transition=f"{current.value}->{target_state.value}",
                    reason=reason,
                    link=link,
                    artifact_references=artifact_references or [],
                    details=details or {},
                )
            )
            self._batches[plan_id][batch_id] = target_state
            return sealed

    def transition_wave(
        self,
        plan_id: str,
        wave_id: str,
        target_state: WaveStatus,
        *,
        reason: str = "",
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        with self._lock:
            self._ensure_loaded(plan_id)
            current = self._waves[plan_id].get(wave_id, WaveStatus.PENDING)

            allowed = WAVE_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition wave {wave_id} from {current.value} to "
                    f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
                )

            sealed = self._ledger.append(
                LedgerEntry(
                    plan_id=plan_id,
                    unit_id=wave_id,
                    unit_kind=UnitKind.WAVE,
                    state_transition=f"{current.value}->{target_state.value}",
                    reason=reason,
                    details=details or {},
                )
            )
            self._waves[plan_id][wave_id] = target_state
            return sealed

    def record_plan(
        self,
        plan_id: str,
        target: PlanStatus,
        *,
        reason: str = "",
        link: str = "",
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Record a plan-level status change (not validated)."""
        current = self.get_plan_status(plan_id)
        from_state = current.value if current else "none"
        return self._ledger.append(
            LedgerEntry(
                plan_id=plan_id,
                unit_id=plan_id,
                unit_kind=UnitKind.PLAN,
                state_transition=f"{from_state}->{target.value}",
                reason=reason,
                link=link,
                details=details or {},
            )
        )

    def record_event(
        self,
        plan_id: str,
        unit_id: str,
        unit_kind: UnitKind,
        transition: str,
        *,
        reason: str = "",
        link: str = "",
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Record a checkpoint, approval or shim event."""
        return self._ledger.append(
            LedgerEntry(
                plan_id=plan_id,
                unit_id=unit_id,
                unit_kind=unit_kind,
                state_transition=transition,
                reason=reason,
                link=link,
                details=details or {},
            )
        )

    def get_available_transitions(self, plan_id: str, batch_id: str) -> set[BatchStatus]:
        return VALID_TRANSITIONS.get(self.get_state(plan_id, batch_id), set())
