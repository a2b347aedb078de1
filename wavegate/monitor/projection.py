"""ProgressTracker: read-mostly view of a plan, re-derived from the ledger.

Statuses, reasons and links all come from ledger entries.  The only
thing the tracker keeps in memory is a short window of recent progress
events per plan, fed by an ``EventBus`` subscription; it is display
context, never truth.
"""

from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from wavegate.core.errors import PlanNotFoundError
from wavegate.core.run_ledger import LedgerIntegrityError, RunLedger
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.models.events import ProgressEvent
from wavegate.models.ledger import LedgerEntry, UnitKind
from wavegate.models.plan import (
    BatchStatus,
    PlanStatus,
    TransformationPlan,
    WaveStatus,
)
from wavegate.models.risk import RiskLevel

RECENT_EVENT_LIMIT = 50


class BatchProgress(BaseModel):
    """Point-in-time status of one batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    order: int
    status: BatchStatus = BatchStatus.PENDING
    risk_level: RiskLevel = RiskLevel.LOW
    risk_value: float = 0.0
    paths: list[str] = []
    requires_approval: bool = False
    reason: str = ""
    link: str = ""
    entered_at: datetime | None = None
    approval_request_id: str | None = None
    commit_id: str | None = None


class WaveProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    wave_id: str
    order: int
    status: WaveStatus = WaveStatus.PENDING
    risk_level: RiskLevel = RiskLevel.LOW
    boundary_reason: str = ""
    reason: str = ""
    batches: list[BatchProgress] = []

    @property
    def committed_count(self) -> int:
        return sum(1 for b in self.batches if b.status == BatchStatus.COMMITTED)


class ProgressSnapshot(BaseModel):
    """A frozen snapshot of a plan, computed fresh on every call."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    title: str = ""
    status: PlanStatus = PlanStatus.PLANNED
    status_reason: str = ""
    waves: list[WaveProgress] = []
    pending_approvals: list[str] = []
    active_shims: list[str] = []
    entry_count: int = 0
    chain_valid: bool = True
    recent_events: list[ProgressEvent] = []
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def batches(self) -> list[BatchProgress]:
        return [b for w in self.waves for b in w.batches]

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def committed_count(self) -> int:
        return sum(w.committed_count for w in self.waves)

    def batches_in(self, status: BatchStatus) -> list[BatchProgress]:
        return [b for b in self.batches if b.status == status]

    def wave(self, wave_id: str) -> WaveProgress:
        for wave in self.waves:
            if wave.wave_id == wave_id:
                return wave
        raise KeyError(wave_id)

    def batch(self, batch_id: str) -> BatchProgress:
        for batch in self.batches:
            if batch.batch_id == batch_id:
                return batch
        raise KeyError(batch_id)

    @property
    def is_finished(self) -> bool:
        return self.status in (
            PlanStatus.COMPLETED,
            PlanStatus.PARTIAL,
            PlanStatus.CANCELLED,
            PlanStatus.HALTED,
        )


def load_plan(ledger: RunLedger, store: ContentAddressedStore, plan_id: str) -> TransformationPlan:
    """Reload an immutable plan from the content address its ledger entry links."""
    ref = ledger.plan_reference(plan_id)
    if ref is None:
        raise PlanNotFoundError(plan_id)
    return TransformationPlan.model_validate_json(store.retrieve(ref))


class ProgressTracker:
    """Projection of plan progress over the Run Ledger.

    Parameters
    ----------
    ledger:
        The Run Ledger to project from.
    store:
        Holds the stored plans.
    """

    def __init__(self, ledger: RunLedger, store: ContentAddressedStore) -> None:
        self._ledger = ledger
        self._store = store
        self._recent: dict[str, deque[ProgressEvent]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Event subscription
    # ------------------------------------------------------------------

    def on_event(self, event: ProgressEvent) -> None:
        """EventBus handler: remember the latest events of each plan."""
        with self._lock:
            self._recent.setdefault(
                event.plan_id, deque(maxlen=RECENT_EVENT_LIMIT)
            ).append(event)

    def recent_events(self, plan_id: str) -> list[ProgressEvent]:
        with self._lock:
            return list(self._recent.get(plan_id, ()))

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self, plan_id: str, plan: TransformationPlan | None = None) -> ProgressSnapshot:
        """Re-read the ledger and build a fresh snapshot.

        Raises
        ------
        PlanNotFoundError
            If the ledger has no entries for *plan_id*.
        """
        entries = self._ledger.get_plan_entries(plan_id)
        if not entries:
            raise PlanNotFoundError(plan_id)
        plan = plan or load_plan(self._ledger, self._store, plan_id)

        latest: dict[tuple[UnitKind, str], LedgerEntry] = {}
        request_of_batch: dict[str, str] = {}
        commit_of_batch: dict[str, str] = {}
        for entry in entries:
            latest[(entry.unit_kind, entry.unit_id)] = entry
            if entry.unit_kind == UnitKind.BATCH:
                if "request_id" in entry.details:
                    request_of_batch[entry.unit_id] = entry.details["request_id"]
                if "commit_id" in entry.details:
                    commit_of_batch[entry.unit_id] = entry.details["commit_id"]

        waves: list[WaveProgress] = []
        for wave in plan.waves:
            batches = []
            for batch in wave.batches:
                entry = latest.get((UnitKind.BATCH, batch.batch_id))
                batches.append(BatchProgress(
                    batch_id=batch.batch_id,
                    order=batch.order,
                    status=BatchStatus(entry.to_state) if entry else BatchStatus.PENDING,
                    risk_level=batch.risk.level,
                    risk_value=batch.risk.value,
                    paths=batch.paths,
                    requires_approval=batch.requires_approval,
                    reason=entry.reason if entry else "",
                    link=entry.link if entry else "",
                    entered_at=entry.timestamp_utc if entry else None,
                    approval_request_id=request_of_batch.get(batch.batch_id),
                    commit_id=commit_of_batch.get(batch.batch_id),
                ))
            wave_entry = latest.get((UnitKind.WAVE, wave.wave_id))
            waves.append(WaveProgress(
                wave_id=wave.wave_id,
                order=wave.order,
                status=WaveStatus(wave_entry.to_state) if wave_entry else WaveStatus.PENDING,
                risk_level=wave.risk.level,
                boundary_reason=wave.boundary_reason,
                reason=wave_entry.reason if wave_entry else "",
                batches=batches,
            ))

        plan_entry = next(
            (e for e in reversed(entries) if e.unit_kind == UnitKind.PLAN), None
        )
        return ProgressSnapshot(
            plan_id=plan_id,
            title=plan.title,
            status=PlanStatus(plan_entry.to_state) if plan_entry else PlanStatus.PLANNED,
            status_reason=plan_entry.reason if plan_entry else "",
            waves=waves,
            pending_approvals=self._units_in(latest, UnitKind.APPROVAL, "pending"),
            active_shims=self._units_in(latest, UnitKind.SHIM, "installed"),
            entry_count=len(entries),
            chain_valid=self._check_chain_valid(plan_id),
            recent_events=self.recent_events(plan_id),
            last_updated=entries[-1].timestamp_utc,
        )

    @staticmethod
    def _units_in(
        latest: dict[tuple[UnitKind, str], LedgerEntry], kind: UnitKind, state: str
    ) -> list[str]:
        return sorted(
            unit_id for (unit_kind, unit_id), entry in latest.items()
            if unit_kind == kind and entry.to_state == state
        )

    def _check_chain_valid(self, plan_id: str) -> bool:
        try:
            return self._ledger.verify_chain(plan_id)
        except LedgerIntegrityError:
            return False
