"""Transformation orchestrator: the central coordinator for wavegate plans.

The Orchestrator wires together the RunLedger, BatchMachine, RiskAssessor,
WavePlanner, RollbackManager, BehaviorVerifier, ApprovalGate,
CompatibilityLayerGenerator, EventBus and ProgressTracker into a single
engine that drives plans wave by wave.

It is the only component that schedules work.  Every state change goes
through the BatchMachine into the Run Ledger first and is published on
the EventBus second, so a fresh Orchestrator over the same storage
resumes exactly where the previous one stopped.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any

from wavegate.collaborators.protocols import (
    FeatureFlagService,
    Parser,
    TestRunner,
    VersionControl,
    Workspace,
)
from wavegate.config import settings
from wavegate.core.approval_gate import ApprovalClosedError, ApprovalGate
from wavegate.core.batch_machine import (
    BatchMachine,
    CommitEvidence,
    InvalidTransitionError,
)
from wavegate.core.behavior_verifier import BehaviorVerifier
from wavegate.core.codebase_lock import CodebaseLockRegistry, LockUnavailableError
from wavegate.core.compat_layer import (
    CompatibilityLayerGenerator,
    CompatibilityShim,
    strip_shims,
)
from wavegate.core.errors import (
    ApplyError,
    ApprovalExpired,
    ApprovalRejected,
    PlanNotFoundError,
    RollbackVerificationFailed,
    TestFailure,
    TransformationError,
    VerificationFailure,
)
from wavegate.core.event_bus import EventBus
from wavegate.core.production_guard import enforce_production_constraints
from wavegate.core.risk_assessor import RiskAssessor
from wavegate.core.rollback_manager import RollbackConflictError, RollbackManager
from wavegate.core.run_ledger import RunLedger
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.core.wave_planner import WavePlanner
from wavegate.models.approvals import ApprovalRequest, ApprovalStatus
from wavegate.models.changes import TransformationKind, TransformationRequest
from wavegate.models.checkpoints import Checkpoint, RollbackResult, RollbackScope
from wavegate.models.config import EngineConfig
from wavegate.models.events import EventKind, ProgressEvent
from wavegate.models.ledger import LedgerEntry, UnitKind
from wavegate.models.notifications import NotificationKind
from wavegate.models.plan import (
    WAVE_TRANSITIONS,
    Batch,
    BatchStatus,
    PlanStatus,
    TransformationPlan,
    Wave,
    WaveStatus,
)
from wavegate.models.verification import TestRunResult
from wavegate.monitor.projection import ProgressSnapshot, ProgressTracker, load_plan
from wavegate.routing.dispatcher import NotificationDispatcher, NotificationDispatchError

logger = logging.getLogger(__name__)

ROLLBACK_ACTOR = "system:rollback"

FINISHED_PLAN_STATES: frozenset[PlanStatus] = frozenset({
    PlanStatus.COMPLETED,
    PlanStatus.PARTIAL,
    PlanStatus.CANCELLED,
    PlanStatus.HALTED,
})

# Batches caught here by a restart were interrupted mid-flight.
_IN_FLIGHT: frozenset[BatchStatus] = frozenset({
    BatchStatus.CHECKPOINTED,
    BatchStatus.APPLYING,
    BatchStatus.VERIFYING,
    BatchStatus.TESTING,
})

# States an operator rollback of one batch can act on, by scope.
_REVERTIBLE: dict[RollbackScope, frozenset[BatchStatus]] = {
    RollbackScope.BATCH: frozenset({
        BatchStatus.COMMITTED,
        BatchStatus.AWAITING_APPROVAL,
        BatchStatus.PENDING,
    }),
    RollbackScope.FILE: frozenset({BatchStatus.COMMITTED}),
}


def _reason_of(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _error_details(exc: TransformationError) -> dict[str, Any]:
    """Structured detail for the rolled_back ledger entry of a batch."""
    if isinstance(exc, ApplyError):
        return {"error": "apply", "path": exc.path}
    if isinstance(exc, VerificationFailure):
        return {
            "error": "verification",
            "differences": [d.model_dump(mode="json") for d in exc.differences],
        }
    if isinstance(exc, TestFailure):
        return {"error": "tests", "failures": exc.failures, "timed_out": exc.timed_out}
    if isinstance(exc, (ApprovalRejected, ApprovalExpired)):
        req = exc.request
        return {
            "error": "approval",
            "request_id": req.request_id,
            "status": req.status.value,
            "decided_by": req.decided_by,
            "decided_at": req.decided_at.isoformat() if req.decided_at else None,
        }
    return {"error": type(exc).__name__}


class Orchestrator:
    """Central transformation orchestrator.

    Parameters
    ----------
    config:
        Engine configuration.  Built from ``settings`` if not provided.
    workspace, vcs, test_runner, parser:
        Required collaborators.
    feature_flags:
        Optional rollout service, used after a wave completes when the
        plan carries a ``feature_flag_key``.
    dispatcher:
        Notification channel for approvers and operators.
    lock_registry:
        Where per-codebase leases come from.  Defaults to the process-wide
        registry so every orchestrator on one codebase shares one lease.
    clock:
        UTC clock for approval deadlines; injectable for tests.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        workspace: Workspace,
        vcs: VersionControl,
        test_runner: TestRunner,
        parser: Parser,
        feature_flags: FeatureFlagService | None = None,
        dispatcher: NotificationDispatcher | None = None,
        lock_registry: CodebaseLockRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or EngineConfig.from_settings(settings)

        # Production guard: fails hard before anything is opened
        enforce_production_constraints(self.config)

        # Collaborators
        self.workspace = workspace
        self.vcs = vcs
        self.test_runner = test_runner
        self.feature_flags = feature_flags
        self.dispatcher = dispatcher

        # Core subsystems
        self.ledger = RunLedger(self.config.ledger_db_path)
        self.store = ContentAddressedStore(self.config.snapshot_store_path)
        self.machine = BatchMachine(self.ledger)
        self.assessor = RiskAssessor(self.config.risk)
        self.planner = WavePlanner(self.config.limits)
        self.rollback_manager = RollbackManager(workspace, vcs, self.store)
        self.verifier = BehaviorVerifier(parser)
        self.compat = CompatibilityLayerGenerator(parser)
        gate_options: dict[str, Any] = {"clock": clock} if clock is not None else {}
        self.approval_gate = ApprovalGate(
            self.config.ledger_db_path,
            dispatcher,
            timeout=self.config.approval_timeout,
            expiry_policy=self.config.expiry_policy,
            audience=self.config.approver_audience,
            **gate_options,
        )
        self.event_bus = EventBus()
        self.tracker = ProgressTracker(self.ledger, self.store)
        self.event_bus.subscribe(self.tracker.on_event)

        # Single-writer lease for this codebase
        self.codebase_id = self.config.codebase_id or workspace.identity
        registry = lock_registry or CodebaseLockRegistry.default()
        self.lease = registry.lease_for(self.codebase_id)

        # Run state
        self._plans: dict[str, TransformationPlan] = {}
        self._running: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._state_lock = threading.Lock()
        self._drive_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, request: TransformationRequest, *, execute: bool = True) -> str:
        """Assess, plan and (by default) run a request; returns the plan_id.

        ``PlanningError`` propagates before any file is touched.
        """
        scores = self.assessor.assess_changes(request)
        plan = self.planner.plan_request(request, scores)
        request_risk = self.assessor.assess_request(request)

        plan_ref = self.store.store_json(plan.model_dump(mode="json"))
        self._plans[plan.plan_id] = plan
        self.machine.record_plan(
            plan.plan_id,
            PlanStatus.PLANNED,
            reason=(
                f"{len(request.changes)} change(s) in {len(plan.batches)} batch(es) "
                f"across {len(plan.waves)} wave(s)"
            ),
            link=plan_ref,
            details={
                "request_id": request.request_id,
                "request_risk": request_risk.model_dump(mode="json"),
                "submitted_by": request.submitted_by,
            },
        )
        self._emit(
            EventKind.PLAN_CREATED,
            plan.plan_id,
            to_state=PlanStatus.PLANNED.value,
            payload={"waves": len(plan.waves), "batches": len(plan.batches)},
        )
        logger.info(
            "Plan %s created for request %s (%d wave(s), request risk %s)",
            plan.plan_id, request.request_id, len(plan.waves), request_risk.level.value,
        )

        if not plan.is_empty:
            self.vcs.create_branch(plan.branch)
        if execute:
            self.run(plan.plan_id)
        return plan.plan_id

    # ------------------------------------------------------------------
    # Plan lookup
    # ------------------------------------------------------------------

    def load_plan(self, plan_id: str) -> TransformationPlan:
        if plan_id not in self._plans:
            self._plans[plan_id] = load_plan(self.ledger, self.store, plan_id)
        return self._plans[plan_id]

    def _plan_of(self, unit_id: str) -> str:
        """Wave and batch ids are prefixed with their plan id."""
        plan_id = unit_id.split("/", 1)[0]
        if not self.ledger.has_plan(plan_id):
            raise PlanNotFoundError(unit_id)
        return plan_id

    def get_progress(self, plan_id: str) -> ProgressSnapshot:
        return self.tracker.snapshot(plan_id, self._plans.get(plan_id))

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def run(self, plan_id: str) -> PlanStatus:
        """Drive a plan as far as it can go without a human decision."""
        plan = self.load_plan(plan_id)
        with self._state_lock:
            if plan_id in self._running:
                logger.info("Plan %s is already being driven", plan_id)
                return self.machine.get_plan_status(plan_id) or PlanStatus.PLANNED
            self._running.add(plan_id)

        try:
            with self._drive_lock:
                status = self._drive(plan)
        finally:
            with self._state_lock:
                self._running.discard(plan_id)
                cancelled = plan_id in self._cancel_requested
                self._cancel_requested.discard(plan_id)

        if cancelled:
            with self._drive_lock:
                status = self._apply_cancellation(plan)
        return status

    def _drive(self, plan: TransformationPlan) -> PlanStatus:
        plan_id = plan.plan_id
        status = self.machine.get_plan_status(plan_id)
        if status in FINISHED_PLAN_STATES or status == PlanStatus.PAUSED:
            return status
        if status == PlanStatus.PLANNED:
            self._set_plan_status(plan_id, PlanStatus.RUNNING, reason="execution started")

        for index, wave in enumerate(plan.waves):
            state = self.machine.get_wave_state(plan_id, wave.wave_id)
            if state == WaveStatus.COMPLETED:
                continue
            if state in (WaveStatus.ROLLED_BACK, WaveStatus.BLOCKED):
                break
            if state == WaveStatus.PAUSED:
                self._set_plan_status(plan_id, PlanStatus.PAUSED, reason=f"{wave.wave_id} is paused")
                return PlanStatus.PAUSED

            if state == WaveStatus.PENDING:
                unmet = [
                    w for w in wave.prerequisite_wave_ids
                    if self.machine.get_wave_state(plan_id, w) != WaveStatus.COMPLETED
                ]
                if unmet:
                    self._block_from(plan, index, reason=f"prerequisite {', '.join(unmet)} not completed")
                    break
                self._set_plan_status(plan_id, PlanStatus.RUNNING, reason=f"{wave.wave_id} started")
                self._transition_wave(
                    plan_id, wave.wave_id, WaveStatus.RUNNING,
                    reason=f"{len(wave.batches)} batch(es), risk {wave.risk.level.value}",
                )

            outcome = self._run_wave(plan, wave)
            if outcome == "cancelled":
                return self.machine.get_plan_status(plan_id) or PlanStatus.RUNNING
            if outcome == "paused":
                return PlanStatus.PAUSED
            if outcome == "suspended":
                self._set_plan_status(
                    plan_id, PlanStatus.AWAITING_APPROVAL,
                    reason=f"{wave.wave_id} has batches awaiting approval",
                )
                return PlanStatus.AWAITING_APPROVAL
            if not self._settle_wave(plan, index):
                break

        return self._finish(plan)

    def _run_wave(self, plan: TransformationPlan, wave: Wave) -> str:
        """Run a wave's batches in planned order.

        Returns ``"done"``, ``"suspended"`` (approval outstanding),
        ``"paused"`` (failure threshold reached) or ``"cancelled"``.
        """
        plan_id = plan.plan_id
        pending: list[Batch] = []
        for batch in wave.batches:
            state = self.machine.get_state(plan_id, batch.batch_id)
            if state == BatchStatus.AWAITING_APPROVAL:
                self._poll_approval(plan, batch)
            elif state in _IN_FLIGHT:
                self._recover_interrupted(plan, batch, state)
            elif state == BatchStatus.PENDING:
                pending.append(batch)

        size = self.config.max_concurrent_batches
        threshold = self.config.consecutive_failure_threshold
        streak = 0
        for start in range(0, len(pending), size):
            if self._cancel_pending(plan_id):
                return "cancelled"
            chunk = pending[start:start + size]
            for status in self._execute_chunk(plan, wave, chunk):
                if status == BatchStatus.COMMITTED:
                    streak = 0
                elif status == BatchStatus.ROLLED_BACK:
                    streak += 1

            remaining = pending[start + size:]
            if streak >= threshold and remaining:
                self._pause_wave(plan, wave, remaining, streak)
                return "paused"

        if any(
            self.machine.get_state(plan_id, b.batch_id) == BatchStatus.AWAITING_APPROVAL
            for b in wave.batches
        ):
            return "suspended"
        return "done"

    def _execute_chunk(
        self, plan: TransformationPlan, wave: Wave, chunk: list[Batch]
    ) -> list[BatchStatus]:
        if len(chunk) == 1:
            return [self._execute_batch(plan, wave, chunk[0])]
        # Batches of one wave touch disjoint files; the lease still
        # serialises applying..testing.
        with ThreadPoolExecutor(
            max_workers=len(chunk), thread_name_prefix="wavegate-batch"
        ) as pool:
            futures = [pool.submit(self._execute_batch, plan, wave, b) for b in chunk]
            return [f.result() for f in futures]

    def _cancel_pending(self, plan_id: str) -> bool:
        with self._state_lock:
            return plan_id in self._cancel_requested

    def _settle_wave(self, plan: TransformationPlan, index: int) -> bool:
        """Complete or roll back a wave whose batches are all terminal."""
        wave = plan.waves[index]
        states = {
            b.batch_id: self.machine.get_state(plan.plan_id, b.batch_id) for b in wave.batches
        }
        not_committed = sorted(b for b, s in states.items() if s != BatchStatus.COMMITTED)
        if not not_committed:
            self._complete_wave(plan, wave)
            return True

        self._transition_wave(
            plan.plan_id, wave.wave_id, WaveStatus.ROLLED_BACK,
            reason=f"{len(not_committed)} batch(es) not committed: {', '.join(not_committed)}",
            details={"batches": {b: states[b].value for b in not_committed}},
        )
        self._block_from(plan, index + 1, reason=f"prerequisite {wave.wave_id} rolled back")
        return False

    def _block_from(self, plan: TransformationPlan, start: int, *, reason: str) -> None:
        """Block every pending wave (and its pending batches) from *start* on."""
        for wave in plan.waves[start:]:
            if self.machine.get_wave_state(plan.plan_id, wave.wave_id) != WaveStatus.PENDING:
                continue
            for batch in wave.batches:
                if self.machine.get_state(plan.plan_id, batch.batch_id) == BatchStatus.PENDING:
                    self._transition(plan.plan_id, batch.batch_id, BatchStatus.BLOCKED, reason=reason)
            self._transition_wave(plan.plan_id, wave.wave_id, WaveStatus.BLOCKED, reason=reason)

    def _finish(self, plan: TransformationPlan) -> PlanStatus:
        plan_id = plan.plan_id
        completed = all(
            self.machine.get_wave_state(plan_id, w.wave_id) == WaveStatus.COMPLETED
            for w in plan.waves
        )
        status = PlanStatus.COMPLETED if completed else PlanStatus.PARTIAL
        states = self.machine.get_all_states(plan_id)
        committed = sum(1 for s in states.values() if s == BatchStatus.COMMITTED)
        message = (
            f"Plan {plan_id} {status.value}: {committed}/{len(plan.batches)} batch(es) committed"
        )
        self._set_plan_status(plan_id, status, reason=message)
        self._notify_operators(plan_id, message, kind=NotificationKind.PLAN_FINISHED)
        return status

    def _pause_wave(
        self, plan: TransformationPlan, wave: Wave, remaining: list[Batch], streak: int
    ) -> None:
        plan_id = plan.plan_id
        reason = f"wave paused after {streak} consecutive batch failure(s)"
        for batch in remaining:
            self._transition(plan_id, batch.batch_id, BatchStatus.BLOCKED, reason=reason)
        self._transition_wave(plan_id, wave.wave_id, WaveStatus.PAUSED, reason=reason)
        self._set_plan_status(plan_id, PlanStatus.PAUSED, reason=f"{wave.wave_id}: {reason}")
        logger.warning("Wave %s paused: %s", wave.wave_id, reason)
        self._notify_operators(
            plan_id,
            f"{wave.wave_id} {reason}; {len(remaining)} batch(es) blocked. "
            f"Inspect, then resume with: wavegate resume {plan_id}",
            kind=NotificationKind.WAVE_PAUSED,
        )

    # ------------------------------------------------------------------
    # Batch execution
    # ------------------------------------------------------------------

    def _execute_batch(self, plan: TransformationPlan, wave: Wave, batch: Batch) -> BatchStatus:
        """Checkpoint, apply, verify and test one batch, then commit or suspend."""
        plan_id = plan.plan_id
        try:
            checkpoint = self._checkpoint(plan_id, batch)
        except ApplyError as exc:
            # Nothing was captured and nothing was written.
            self._transition(
                plan_id, batch.batch_id, BatchStatus.ROLLED_BACK,
                reason=_reason_of(exc), details=_error_details(exc),
            )
            logger.warning("Batch %s refused before checkpoint: %s", batch.batch_id, exc)
            return BatchStatus.ROLLED_BACK

        try:
            self.lease.acquire(batch.batch_id, self.config.lock_timeout_seconds)
        except LockUnavailableError as exc:
            # Nothing was written; only prove the files are untouched.
            self._roll_back(plan_id, batch, checkpoint, ApplyError(str(exc)), restore=False)
            return BatchStatus.ROLLED_BACK

        link = ""
        try:
            try:
                self.lease.claim(batch.batch_id, batch.paths)
            except LockUnavailableError as exc:
                raise ApplyError(str(exc)) from exc

            self._transition(plan_id, batch.batch_id, BatchStatus.APPLYING,
                             reason=f"writing {len(batch.files)} file(s)")
            self._apply(batch)

            link = self.store.store_text(self.vcs.diff(checkpoint.snapshot_ref, batch.paths))
            self._transition(plan_id, batch.batch_id, BatchStatus.VERIFYING, link=link)
            report = self.verifier.verify_batch(batch)
            link = self.store.store_json(report.model_dump(mode="json"))
            if not report.passed:
                raise VerificationFailure(
                    f"{len(report.critical)} critical behavior difference(s): "
                    + "; ".join(d.description for d in report.critical),
                    report.critical,
                )

            full_suite = batch.risk.requires_extended_testing
            self._transition(
                plan_id, batch.batch_id, BatchStatus.TESTING,
                reason="full suite" if full_suite else "affected tests",
                link=link,
                details={"warnings": [d.model_dump(mode="json") for d in report.warnings]},
            )
            result = self._run_tests(batch, full_suite)
            link = self.store.store_text(result.output) if result.output else link
            if not result.passed:
                what = "timed out" if result.timed_out else f"{len(result.failures)} failure(s)"
                raise TestFailure(
                    f"tests {what}: {', '.join(result.failures[:5])}",
                    failures=result.failures,
                    timed_out=result.timed_out,
                )

            if not batch.requires_approval:
                evidence = CommitEvidence(
                    tests_passed=True,
                    critical_differences=len(report.critical),
                    approval_required=False,
                )
                self._commit(plan, batch, checkpoint, evidence, reason="tests passed", link=link)
                return BatchStatus.COMMITTED
        except (ApplyError, VerificationFailure, TestFailure) as exc:
            self._roll_back(plan_id, batch, checkpoint, exc, link=link)
            return BatchStatus.ROLLED_BACK
        finally:
            self.lease.release(batch.batch_id)

        self._await_approval(plan, batch, link)
        return BatchStatus.AWAITING_APPROVAL

    def _checkpoint(self, plan_id: str, batch: Batch) -> Checkpoint:
        try:
            checkpoint = self.rollback_manager.create_checkpoint(batch.batch_id, batch.paths)
        except (OSError, ValueError) as exc:
            # An unreadable original cannot match the change's before_content.
            raise ApplyError(
                f"{batch.batch_id} could not be checkpointed: {exc}",
                path=getattr(exc, "path", ""),
            ) from exc
        manifest = self.rollback_manager.manifest_ref(checkpoint)
        self.machine.record_event(
            plan_id, checkpoint.checkpoint_id, UnitKind.CHECKPOINT, "none->created",
            link=manifest, details={"batch_id": batch.batch_id},
        )
        self._transition(
            plan_id, batch.batch_id, BatchStatus.CHECKPOINTED,
            link=manifest, details={"checkpoint_id": checkpoint.checkpoint_id},
        )
        return checkpoint

    def _checkpoint_of(self, plan_id: str, batch_id: str) -> tuple[Checkpoint, str] | None:
        """Latest checkpoint of a batch and its lifecycle state, from the ledger."""
        found: LedgerEntry | None = None
        for entry in self.ledger.get_plan_entries(plan_id):
            if entry.unit_kind == UnitKind.CHECKPOINT and entry.details.get("batch_id") == batch_id:
                found = entry
        if found is None:
            return None
        checkpoint = self.rollback_manager.load(found.link)
        if found.to_state == "released":
            checkpoint = self.rollback_manager.release(checkpoint)
        return checkpoint, found.to_state

    def _require_checkpoint(self, plan_id: str, batch_id: str) -> Checkpoint:
        found = self._checkpoint_of(plan_id, batch_id)
        if found is None:
            raise TransformationError(f"No checkpoint recorded for {batch_id}")
        return found[0]

    def _apply(self, batch: Batch) -> None:
        for change in batch.files:
            try:
                current = self.workspace.read(change.path)
            except (OSError, ValueError) as exc:
                raise ApplyError(f"Reading {change.path} failed: {exc}", path=change.path) from exc
            if current != change.before_content:
                raise ApplyError(
                    f"{change.path} changed since the transformation was generated",
                    path=change.path,
                )
        for change in batch.files:
            try:
                if change.is_deletion:
                    self.workspace.delete(change.path)
                else:
                    self.workspace.write(change.path, change.after_content)
            except (OSError, ValueError) as exc:
                raise ApplyError(f"Writing {change.path} failed: {exc}", path=change.path) from exc

    def _run_tests(self, batch: Batch, full_suite: bool) -> TestRunResult:
        timeout = self.config.test_timeout_seconds
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wavegate-tests")
        future = pool.submit(self.test_runner.run_tests, batch.paths, full_suite, timeout)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            logger.warning("Tests for %s timed out after %gs", batch.batch_id, timeout)
            return TestRunResult(passed=False, failures=["<timeout>"], timed_out=True)
        except Exception as exc:  # noqa: BLE001 - test runner is an external capability
            logger.exception("Test runner failed for %s", batch.batch_id)
            return TestRunResult(passed=False, failures=[f"<runner error: {exc}>"])
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _commit(
        self,
        plan: TransformationPlan,
        batch: Batch,
        checkpoint: Checkpoint,
        evidence: CommitEvidence,
        *,
        reason: str,
        link: str = "",
    ) -> None:
        plan_id = plan.plan_id
        # Refuse before anything reaches version control.
        self.machine.guard_commit(batch.batch_id, evidence)
        try:
            commit_id = self.vcs.commit(
                plan.branch,
                batch.paths,
                f"wavegate: {batch.batch_id} ({batch.risk.level.value}) {plan.title}".rstrip(),
            )
        except Exception as exc:  # noqa: BLE001 - version control is an external capability
            logger.exception("Version control refused the commit of %s", batch.batch_id)
            raise ApplyError(f"Commit of {batch.batch_id} failed: {exc}") from exc
        self._transition(
            plan_id, batch.batch_id, BatchStatus.COMMITTED,
            reason=reason, link=link, details={"commit_id": commit_id}, evidence=evidence,
        )
        released = self.rollback_manager.release(checkpoint)
        self.machine.record_event(
            plan_id, checkpoint.checkpoint_id, UnitKind.CHECKPOINT, "created->released",
            link=self.rollback_manager.manifest_ref(released),
            details={"batch_id": batch.batch_id, "commit_id": commit_id},
        )
        self.lease.release_claims(batch.batch_id)

    def _roll_back(
        self,
        plan_id: str,
        batch: Batch,
        checkpoint: Checkpoint,
        error: TransformationError,
        *,
        link: str = "",
        restore: bool = True,
    ) -> None:
        """Restore a batch's files and record why it was rolled back.

        ``RollbackVerificationFailed`` halts the plan and propagates.
        """
        try:
            if restore:
                restored = self.rollback_manager.restore(checkpoint)
            else:
                restored = []
                mismatched = self.rollback_manager.mismatched_paths(checkpoint, checkpoint.paths)
                if mismatched:
                    raise RollbackVerificationFailed(
                        f"Files changed without a writer for {batch.batch_id}: {', '.join(mismatched)}",
                        mismatched_paths=mismatched,
                    )
        except RollbackVerificationFailed as fatal:
            self._halt(plan_id, batch.batch_id, fatal)
            raise

        self.machine.record_event(
            plan_id, checkpoint.checkpoint_id, UnitKind.CHECKPOINT, "created->consumed",
            link=self.rollback_manager.manifest_ref(checkpoint),
            details={"batch_id": batch.batch_id, "restored_paths": restored},
        )
        self._transition(
            plan_id, batch.batch_id, BatchStatus.ROLLED_BACK,
            reason=_reason_of(error), link=link, details=_error_details(error),
        )
        self.lease.release_claims(batch.batch_id)
        logger.warning("Batch %s rolled back: %s", batch.batch_id, _reason_of(error))

    def _recover_interrupted(self, plan: TransformationPlan, batch: Batch, state: BatchStatus) -> None:
        checkpoint = self._require_checkpoint(plan.plan_id, batch.batch_id)
        error = ApplyError(f"interrupted while {state.value}; restored from {checkpoint.checkpoint_id}")
        with self.lease.hold(batch.batch_id, self.config.lock_timeout_seconds):
            self._roll_back(plan.plan_id, batch, checkpoint, error)

    def _halt(self, plan_id: str, batch_id: str, exc: RollbackVerificationFailed) -> None:
        """Escalate a failed rollback: the working tree can no longer be trusted."""
        reason = _reason_of(exc)
        if BatchStatus.FAILED in self.machine.get_available_transitions(plan_id, batch_id):
            self._transition(
                plan_id, batch_id, BatchStatus.FAILED,
                reason=reason, details={"mismatched_paths": exc.mismatched_paths},
            )
        self.lease.release_claims(batch_id)
        self._set_plan_status(plan_id, PlanStatus.HALTED, reason=reason)
        self._emit(
            EventKind.ESCALATION, plan_id,
            unit_id=batch_id, unit_kind=UnitKind.BATCH, reason=reason,
            payload={"mismatched_paths": exc.mismatched_paths},
        )
        logger.critical("Plan %s halted: rollback of %s failed verification", plan_id, batch_id)
        self._notify_operators(
            plan_id,
            f"INCIDENT: rollback of {batch_id} did not restore "
            f"{', '.join(exc.mismatched_paths)} byte-for-byte. Plan {plan_id} is halted; "
            f"the working tree needs manual inspection.",
            kind=NotificationKind.ESCALATION,
        )

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def _await_approval(self, plan: TransformationPlan, batch: Batch, link: str) -> None:
        """Suspend a tested batch on a persisted approval request.

        The batch keeps its file claims until the decision.
        """
        plan_id = plan.plan_id
        req = self.approval_gate.get_pending_for_unit(batch.batch_id) or self.approval_gate.request(
            batch.batch_id,
            batch.risk,
            plan_id=plan_id,
            description=f"{plan.title or plan_id}: {', '.join(batch.paths)}",
            link=link,
        )
        self.machine.record_event(
            plan_id, req.request_id, UnitKind.APPROVAL, "none->pending",
            reason=f"risk {batch.risk.level.value} requires approval",
            link=link,
            details={"batch_id": batch.batch_id, "deadline": req.deadline.isoformat()},
        )
        self._transition(
            plan_id, batch.batch_id, BatchStatus.AWAITING_APPROVAL,
            reason=f"risk {batch.risk.level.value} ({batch.risk.value:g}) requires approval",
            link=link,
            details={
                "request_id": req.request_id,
                "deadline": req.deadline.isoformat(),
                "tests_passed": True,
                "critical_differences": 0,
            },
        )
        self._emit(
            EventKind.APPROVAL_REQUESTED, plan_id,
            unit_id=batch.batch_id, unit_kind=UnitKind.BATCH,
            to_state=ApprovalStatus.PENDING.value,
            payload={"request_id": req.request_id, "deadline": req.deadline.isoformat()},
        )

    def _poll_approval(self, plan: TransformationPlan, batch: Batch) -> BatchStatus:
        req = self.approval_gate.latest_for_unit(batch.batch_id)
        if req is None:
            logger.error("Batch %s awaits approval but has no request on record", batch.batch_id)
            return BatchStatus.AWAITING_APPROVAL
        req = self.approval_gate.poll(req.request_id)
        if req.is_pending:
            # Claims are in-memory; re-establish them after a restart.
            try:
                self.lease.claim(batch.batch_id, batch.paths)
            except LockUnavailableError as exc:
                logger.warning("Cannot re-claim files of %s: %s", batch.batch_id, exc)
            return BatchStatus.AWAITING_APPROVAL
        return self._resolve(plan, batch, req)

    def _awaiting_evidence(self, plan_id: str, batch: Batch, req: ApprovalRequest) -> CommitEvidence:
        details: dict[str, Any] = {}
        for entry in self.ledger.get_unit_history(plan_id, batch.batch_id):
            if entry.to_state == BatchStatus.AWAITING_APPROVAL.value:
                details = entry.details
        return CommitEvidence(
            tests_passed=bool(details.get("tests_passed", False)),
            critical_differences=int(details.get("critical_differences", 0)),
            approval_required=batch.requires_approval,
            approval_granted=req.grants_commit and details.get("request_id") == req.request_id,
        )

    def _record_decision(self, plan_id: str, req: ApprovalRequest) -> None:
        history = self.ledger.get_unit_history(plan_id, req.request_id)
        if any(entry.from_state == ApprovalStatus.PENDING.value for entry in history):
            return
        self.machine.record_event(
            plan_id, req.request_id, UnitKind.APPROVAL, f"pending->{req.status.value}",
            reason=f"{req.status.value} by {req.decided_by}",
            link=req.link,
            details={
                "batch_id": req.unit_id,
                "decided_by": req.decided_by,
                "decided_at": req.decided_at.isoformat() if req.decided_at else None,
            },
        )
        self._emit(
            EventKind.APPROVAL_DECIDED, plan_id,
            unit_id=req.unit_id, unit_kind=UnitKind.BATCH,
            from_state=ApprovalStatus.PENDING.value, to_state=req.status.value,
            reason=f"{req.status.value} by {req.decided_by}",
            payload={"request_id": req.request_id},
        )

    def _resolve(self, plan: TransformationPlan, batch: Batch, req: ApprovalRequest) -> BatchStatus:
        """Act on a decided request: commit on a grant, roll back otherwise."""
        plan_id = plan.plan_id
        state = self.machine.get_state(plan_id, batch.batch_id)
        if state != BatchStatus.AWAITING_APPROVAL:
            return state
        self._record_decision(plan_id, req)
        checkpoint = self._require_checkpoint(plan_id, batch.batch_id)

        error: TransformationError
        if req.grants_commit:
            try:
                self._commit(
                    plan, batch, checkpoint, self._awaiting_evidence(plan_id, batch, req),
                    reason=f"approved by {req.decided_by}", link=req.link,
                )
                return BatchStatus.COMMITTED
            except ApplyError as exc:
                error = exc
        elif req.status == ApprovalStatus.EXPIRED:
            error = ApprovalExpired(
                f"no decision by {req.deadline.isoformat()}", req
            )
        else:
            error = ApprovalRejected(f"rejected by {req.decided_by}", req)
        try:
            with self.lease.hold(batch.batch_id, self.config.lock_timeout_seconds):
                self._roll_back(plan_id, batch, checkpoint, error, link=req.link)
        except LockUnavailableError as exc:
            logger.warning("%s stays awaiting_approval until the lease frees: %s", batch.batch_id, exc)
            return BatchStatus.AWAITING_APPROVAL
        return BatchStatus.ROLLED_BACK

    def _settle(self, req: ApprovalRequest) -> BatchStatus:
        plan = self.load_plan(req.plan_id or self._plan_of(req.unit_id))
        batch = plan.get_batch(req.unit_id)
        with self._drive_lock:
            return self._resolve(plan, batch, req)

    def _continue(self, plan_id: str) -> None:
        with self._state_lock:
            if plan_id in self._running:
                return
        status = self.machine.get_plan_status(plan_id)
        if status not in FINISHED_PLAN_STATES and status != PlanStatus.PAUSED:
            self.run(plan_id)

    def approve(self, request_id: str, decision: bool, actor: str) -> ApprovalRequest:
        """Record a human decision and continue the plan.

        Raises
        ------
        ApprovalClosedError
            If the request was already decided or its deadline passed.  An
            overdue request is still expired and its batch rolled back.
        """
        try:
            req = self.approval_gate.decide(request_id, decision, actor)
        except ApprovalClosedError:
            late = self.approval_gate.get(request_id)
            self._settle(late)
            self._continue(late.plan_id)
            raise
        self._settle(req)
        self._continue(req.plan_id)
        return req

    def tick(self) -> list[ApprovalRequest]:
        """Expire overdue approval requests and continue affected plans."""
        changed = [
            req for req in self.approval_gate.poll_all()
            if req.plan_id and self.ledger.has_plan(req.plan_id)
        ]
        plan_ids: list[str] = []
        for req in changed:
            self._settle(req)
            if req.plan_id not in plan_ids:
                plan_ids.append(req.plan_id)
        for plan_id in plan_ids:
            self._continue(plan_id)
        return changed

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def cancel(self, plan_id: str) -> PlanStatus:
        """Stop a plan between batches; committed batches stay in place."""
        plan = self.load_plan(plan_id)
        with self._state_lock:
            if plan_id in self._running:
                self._cancel_requested.add(plan_id)
                logger.info("Cancellation of %s requested; takes effect after the current batch", plan_id)
                return self.machine.get_plan_status(plan_id) or PlanStatus.RUNNING
        with self._drive_lock:
            return self._apply_cancellation(plan)

    def _apply_cancellation(self, plan: TransformationPlan) -> PlanStatus:
        plan_id = plan.plan_id
        status = self.machine.get_plan_status(plan_id)
        if status in FINISHED_PLAN_STATES:
            return status
        for wave in plan.waves:
            states = [self.machine.get_state(plan_id, b.batch_id) for b in wave.batches]
            for batch, state in zip(wave.batches, states):
                if state == BatchStatus.PENDING:
                    self._transition(plan_id, batch.batch_id, BatchStatus.BLOCKED, reason="cancelled")
            wave_state = self.machine.get_wave_state(plan_id, wave.wave_id)
            if (
                wave_state in (WaveStatus.PENDING, WaveStatus.RUNNING)
                and BatchStatus.AWAITING_APPROVAL not in states
            ):
                self._transition_wave(plan_id, wave.wave_id, WaveStatus.BLOCKED, reason="cancelled")
        self._set_plan_status(plan_id, PlanStatus.CANCELLED, reason="cancelled by operator")
        self._notify_operators(plan_id, f"Plan {plan_id} cancelled", kind=NotificationKind.INFO)
        return PlanStatus.CANCELLED

    def resume(self, plan_id: str) -> PlanStatus:
        """Continue a suspended or paused plan, also from a new process."""
        self.machine.forget(plan_id)
        plan = self.load_plan(plan_id)
        with self._drive_lock:
            for wave in plan.waves:
                if self.machine.get_wave_state(plan_id, wave.wave_id) == WaveStatus.PAUSED:
                    self._unpause(plan, wave)
            if self.machine.get_plan_status(plan_id) == PlanStatus.PAUSED:
                self._set_plan_status(plan_id, PlanStatus.RUNNING, reason="resumed by operator")
        return self.run(plan_id)

    def unblock_wave(self, wave_id: str) -> PlanStatus:
        """Return a paused wave's blocked batches to pending and continue."""
        plan_id = self._plan_of(wave_id)
        plan = self.load_plan(plan_id)
        wave = plan.get_wave(wave_id)
        with self._drive_lock:
            state = self.machine.get_wave_state(plan_id, wave_id)
            if state != WaveStatus.PAUSED:
                raise InvalidTransitionError(f"Wave {wave_id} is {state.value}, not paused")
            self._unpause(plan, wave)
        return self.run(plan_id)

    def _unpause(self, plan: TransformationPlan, wave: Wave) -> None:
        plan_id = plan.plan_id
        for batch in wave.batches:
            if self.machine.get_state(plan_id, batch.batch_id) == BatchStatus.BLOCKED:
                self._transition(plan_id, batch.batch_id, BatchStatus.PENDING, reason="resumed by operator")
        self._transition_wave(plan_id, wave.wave_id, WaveStatus.RUNNING, reason="resumed by operator")
        self._set_plan_status(plan_id, PlanStatus.RUNNING, reason=f"{wave.wave_id} resumed")

    # ------------------------------------------------------------------
    # Operator rollback
    # ------------------------------------------------------------------

    def rollback(
        self,
        scope: RollbackScope | str,
        unit_id: str,
        paths: list[str] | None = None,
    ) -> RollbackResult:
        """Revert a batch, a wave, or some files of a committed batch.

        Conflicts (files edited after commit) are reported in the result,
        not raised.  ``RollbackVerificationFailed`` halts and propagates.
        """
        scope = RollbackScope(scope)
        plan_id = self._plan_of(unit_id)
        plan = self.load_plan(plan_id)

        if scope == RollbackScope.WAVE:
            wave = plan.get_wave(unit_id)
            batches = list(reversed(wave.batches))
        else:
            batches = [plan.get_batch(unit_id)]
            wave = plan.wave_of(unit_id)
        if scope == RollbackScope.FILE:
            unknown = sorted(set(paths or []) - set(batches[0].paths))
            if not paths or unknown:
                raise ValueError(
                    f"File rollback of {unit_id} needs paths from the batch; unknown: {', '.join(unknown)}"
                )

        with self._drive_lock:
            if scope != RollbackScope.WAVE:
                state = self.machine.get_state(plan_id, unit_id)
                if state not in _REVERTIBLE[scope] and state not in _IN_FLIGHT:
                    message = f"{unit_id} is {state.value}; nothing to roll back"
                    logger.warning("Rollback of %s %s refused: %s", scope.value, unit_id, message)
                    return RollbackResult(
                        scope=scope, unit_id=unit_id, success=False, message=message,
                    )

            checkpoints = {}
            for batch in batches:
                found = self._checkpoint_of(plan_id, batch.batch_id)
                if found is not None:
                    checkpoints[batch.batch_id] = found[0]
            point = self.rollback_manager.establish_point(
                scope, unit_id, list(checkpoints.values()), paths
            )
            covered = self.rollback_manager.paths_of(point)

            restored: list[str] = []
            rolled_back: list[str] = []
            for batch in batches:
                state = self.machine.get_state(plan_id, batch.batch_id)
                try:
                    if state == BatchStatus.COMMITTED:
                        checkpoint = checkpoints[batch.batch_id]
                        restored += self._revert_committed(
                            plan, batch, checkpoint,
                            covered.get(checkpoint.checkpoint_id, []),
                            full=scope != RollbackScope.FILE,
                        )
                        if scope != RollbackScope.FILE:
                            rolled_back.append(batch.batch_id)
                    elif state == BatchStatus.AWAITING_APPROVAL and scope != RollbackScope.FILE:
                        restored += self._withdraw(plan, batch, checkpoints[batch.batch_id])
                        rolled_back.append(batch.batch_id)
                    elif state == BatchStatus.PENDING and scope != RollbackScope.FILE:
                        self._transition(plan_id, batch.batch_id, BatchStatus.BLOCKED,
                                         reason="rolled back by operator before it started")
                    elif state in _IN_FLIGHT:
                        raise InvalidTransitionError(
                            f"{batch.batch_id} is {state.value}; rollback happens between batches"
                        )
                except RollbackConflictError as exc:
                    logger.warning("Rollback of %s stopped: %s", unit_id, exc)
                    return RollbackResult(
                        scope=scope, unit_id=unit_id, success=False,
                        restored_paths=restored, rolled_back_batches=rolled_back,
                        conflicts=exc.conflicts, message=str(exc),
                    )

            if scope != RollbackScope.FILE:
                self._settle_operator_rollback(plan, wave, rolled_back)

        message = (
            f"Restored {len(restored)} file(s)"
            + (f"; rolled back {', '.join(rolled_back)}" if rolled_back else "")
        )
        logger.info("Rollback of %s %s: %s", scope.value, unit_id, message)
        return RollbackResult(
            scope=scope, unit_id=unit_id, success=True,
            restored_paths=restored, rolled_back_batches=rolled_back, message=message,
        )

    def _settle_operator_rollback(
        self, plan: TransformationPlan, wave: Wave, rolled_back: list[str]
    ) -> None:
        plan_id = plan.plan_id
        reason = f"rolled back by operator ({', '.join(rolled_back) or 'no committed batches'})"
        wave_state = self.machine.get_wave_state(plan_id, wave.wave_id)
        if WaveStatus.ROLLED_BACK in WAVE_TRANSITIONS[wave_state]:
            self._transition_wave(plan_id, wave.wave_id, WaveStatus.ROLLED_BACK, reason=reason)
        elif wave_state == WaveStatus.PENDING:
            self._transition_wave(plan_id, wave.wave_id, WaveStatus.BLOCKED, reason=reason)
        self._block_from(plan, wave.order + 1, reason=f"prerequisite {wave.wave_id} rolled back")

        status = self.machine.get_plan_status(plan_id)
        if status == PlanStatus.COMPLETED:
            self._set_plan_status(plan_id, PlanStatus.PARTIAL, reason=reason)
        elif status in (PlanStatus.RUNNING, PlanStatus.AWAITING_APPROVAL):
            with self._state_lock:
                running = plan_id in self._running
            if not running:
                self._drive(plan)

    def _revert_committed(
        self,
        plan: TransformationPlan,
        batch: Batch,
        checkpoint: Checkpoint,
        paths: list[str],
        *,
        full: bool,
    ) -> list[str]:
        plan_id = plan.plan_id
        after = {c.path: c.after_content for c in batch.files}
        forward_shims = [
            s for s in self._active_shims(plan_id) if s.path in paths and not s.reverse
        ]

        def unshimmed(path: str) -> str | None:
            content = self.workspace.read(path)
            return None if content is None else strip_shims(content)

        conflicts = sorted(p for p in paths if unshimmed(p) != after[p])
        if conflicts:
            raise RollbackConflictError(
                f"Files changed since {batch.batch_id} committed: {', '.join(conflicts)}",
                conflicts=conflicts,
            )
        for shim in forward_shims:
            self._remove_shim(plan, shim, reason=f"{batch.batch_id} rolled back")

        try:
            with self.lease.hold(f"rollback:{batch.batch_id}", self.config.lock_timeout_seconds):
                restored = self.rollback_manager.restore_subset(
                    checkpoint, paths, expected_current={p: after[p] for p in paths}
                )
                revert_id = self.vcs.commit(
                    plan.branch, restored, f"wavegate: revert {', '.join(restored)} of {batch.batch_id}"
                )
        except RollbackVerificationFailed as fatal:
            self._halt(plan_id, batch.batch_id, fatal)
            raise

        manifest = self.rollback_manager.manifest_ref(checkpoint)
        details = {"batch_id": batch.batch_id, "restored_paths": restored, "revert_commit_id": revert_id}
        if full:
            self.machine.record_event(
                plan_id, checkpoint.checkpoint_id, UnitKind.CHECKPOINT, "released->consumed",
                reason="operator rollback", link=manifest, details=details,
            )
            self._transition(
                plan_id, batch.batch_id, BatchStatus.ROLLED_BACK,
                reason="rolled back by operator", link=manifest,
                details={"restored_paths": restored, "revert_commit_id": revert_id},
            )
            if self.config.regenerate_shims_on_rollback:
                self._install_reverse_shims(plan, batch)
        else:
            self.machine.record_event(
                plan_id, checkpoint.checkpoint_id, UnitKind.CHECKPOINT, "released->released",
                reason=f"partial restore of {', '.join(restored)}", link=manifest, details=details,
            )
        return restored

    def _withdraw(self, plan: TransformationPlan, batch: Batch, checkpoint: Checkpoint) -> list[str]:
        """Roll back a batch still awaiting approval, closing its request."""
        req = self.approval_gate.get_pending_for_unit(batch.batch_id)
        if req is not None:
            try:
                req = self.approval_gate.decide(req.request_id, False, ROLLBACK_ACTOR)
            except ApprovalClosedError:
                req = self.approval_gate.get(req.request_id)
        else:
            req = self.approval_gate.latest_for_unit(batch.batch_id)
        if req is None:
            raise TransformationError(f"{batch.batch_id} awaits approval without a request")
        self._record_decision(plan.plan_id, req)
        with self.lease.hold(batch.batch_id, self.config.lock_timeout_seconds):
            self._roll_back(
                plan.plan_id, batch, checkpoint,
                ApprovalRejected("withdrawn by operator rollback", req), link=req.link,
            )
        return checkpoint.paths

    # ------------------------------------------------------------------
    # Wave completion: rollout and shims
    # ------------------------------------------------------------------

    def _complete_wave(self, plan: TransformationPlan, wave: Wave) -> None:
        plan_id = plan.plan_id
        details: dict[str, Any] = {}
        if plan.feature_flag_key and self.feature_flags is not None:
            percent = self.config.rollout_percentages.get(wave.risk.level, 100)
            try:
                self.feature_flags.set_rollout_percentage(plan.feature_flag_key, percent)
                details["rollout"] = {"key": plan.feature_flag_key, "percent": percent}
            except Exception as exc:  # noqa: BLE001 - feature-flag service is external
                logger.exception("Rollout of %s for %s failed", plan.feature_flag_key, wave.wave_id)
                details["rollout_error"] = str(exc)

        self._transition_wave(
            plan_id, wave.wave_id, WaveStatus.COMPLETED,
            reason=f"{len(wave.batches)} batch(es) committed", details=details,
        )
        if "rollout" in details:
            self._emit(
                EventKind.ROLLOUT, plan_id,
                unit_id=wave.wave_id, unit_kind=UnitKind.WAVE, payload=details["rollout"],
            )

        for shim in self._active_shims(plan_id):
            if shim.remove_after_wave_id == wave.wave_id:
                self._remove_shim(plan, shim, reason=f"dependents migrated in {wave.wave_id}")
        if self.config.generate_compat_shims:
            for shim in self.compat.plan_shims(plan, wave):
                self._install_shim(plan, shim)

    def _active_shims(self, plan_id: str) -> list[CompatibilityShim]:
        latest: dict[str, LedgerEntry] = {}
        for entry in self.ledger.get_plan_entries(plan_id):
            if entry.unit_kind == UnitKind.SHIM:
                latest[entry.unit_id] = entry
        return [
            CompatibilityShim.model_validate_json(self.store.retrieve(entry.link))
            for entry in latest.values()
            if entry.to_state == "installed"
        ]

    def _install_shim(self, plan: TransformationPlan, shim: CompatibilityShim) -> None:
        with self.lease.hold(shim.shim_id, self.config.lock_timeout_seconds):
            try:
                self.compat.install(shim, self.workspace)
            except FileNotFoundError as exc:
                logger.warning("Shim %s not installed: %s", shim.shim_id, exc)
                return
            commit_id = self.vcs.commit(
                plan.branch, [shim.path], f"wavegate: deprecated alias {shim.old_name} in {shim.path}"
            )
        ref = self.store.store_json(shim.model_dump(mode="json"))
        reason = f"{shim.old_name} -> {shim.new_name} for {', '.join(shim.dependent_paths)}"
        self.machine.record_event(
            plan.plan_id, shim.shim_id, UnitKind.SHIM, "none->installed",
            reason=reason, link=ref,
            details={
                "path": shim.path,
                "remove_after_wave_id": shim.remove_after_wave_id,
                "reverse": shim.reverse,
                "commit_id": commit_id,
            },
        )
        self._emit(
            EventKind.SHIM_INSTALLED, plan.plan_id,
            unit_id=shim.shim_id, unit_kind=UnitKind.SHIM, to_state="installed", reason=reason,
        )

    def _remove_shim(self, plan: TransformationPlan, shim: CompatibilityShim, *, reason: str) -> None:
        with self.lease.hold(shim.shim_id, self.config.lock_timeout_seconds):
            if self.compat.remove(shim, self.workspace):
                self.vcs.commit(
                    plan.branch, [shim.path], f"wavegate: remove alias {shim.old_name} from {shim.path}"
                )
        self.machine.record_event(
            plan.plan_id, shim.shim_id, UnitKind.SHIM, "installed->removed",
            reason=reason, link=self.store.store_json(shim.model_dump(mode="json")),
            details={"path": shim.path},
        )
        self._emit(
            EventKind.SHIM_REMOVED, plan.plan_id,
            unit_id=shim.shim_id, unit_kind=UnitKind.SHIM,
            from_state="installed", to_state="removed", reason=reason,
        )

    def _install_reverse_shims(self, plan: TransformationPlan, batch: Batch) -> None:
        """Alias new names back to restored code for dependents that already migrated."""
        plan_id = plan.plan_id
        wave = plan.wave_of(batch.batch_id)
        migrated = [
            change
            for later in plan.waves[wave.order + 1:]
            for b in later.batches
            if self.machine.get_state(plan_id, b.batch_id) == BatchStatus.COMMITTED
            for change in b.files
        ]

        def dependents_of(path: str) -> list[str]:
            return sorted(c.path for c in migrated if path in c.depends_on)

        for change in batch.files:
            if change.transformation_kind != TransformationKind.RENAME_SYMBOL:
                continue
            dependents = dependents_of(change.path)
            for old, new in self.compat.detect_renames(change) if dependents else []:
                shim = self.compat.build_shim(
                    change.path, new, old, wave.wave_id,
                    dependent_paths=dependents, reverse=True,
                )
                if shim is not None:
                    self._install_shim(plan, shim)

        moves = self.compat.detect_moves(
            [c for c in batch.files if c.transformation_kind == TransformationKind.MOVE_SYMBOL]
        )
        for symbol, from_path, to_path in moves:
            dependents = dependents_of(to_path)
            if not dependents:
                continue
            shim = self.compat.build_shim(
                to_path, symbol, symbol, wave.wave_id,
                source_module=from_path, dependent_paths=dependents, reverse=True,
            )
            if shim is not None:
                self._install_shim(plan, shim)

    # ------------------------------------------------------------------
    # Recording and events
    # ------------------------------------------------------------------

    def _transition(
        self,
        plan_id: str,
        batch_id: str,
        target: BatchStatus,
        *,
        reason: str = "",
        link: str = "",
        details: dict[str, Any] | None = None,
        evidence: CommitEvidence | None = None,
    ) -> LedgerEntry:
        entry = self.machine.transition(
            plan_id, batch_id, target,
            reason=reason, link=link, details=details, evidence=evidence,
        )
        self._publish_entry(entry)
        if target in (BatchStatus.COMMITTED, BatchStatus.BLOCKED):
            logger.info("Batch %s %s: %s", batch_id, entry.state_transition, reason)
        else:
            logger.debug("Batch %s %s", batch_id, entry.state_transition)
        return entry

    def _transition_wave(
        self,
        plan_id: str,
        wave_id: str,
        target: WaveStatus,
        *,
        reason: str = "",
        details: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        entry = self.machine.transition_wave(plan_id, wave_id, target, reason=reason, details=details)
        self._publish_entry(entry)
        logger.info("Wave %s %s: %s", wave_id, entry.state_transition, reason)
        return entry

    def _set_plan_status(self, plan_id: str, status: PlanStatus, *, reason: str = "") -> None:
        if self.machine.get_plan_status(plan_id) == status:
            return
        entry = self.machine.record_plan(plan_id, status, reason=reason)
        self._publish_entry(entry)
        logger.info("Plan %s %s: %s", plan_id, entry.state_transition, reason)

    def _publish_entry(self, entry: LedgerEntry) -> None:
        self._emit(
            EventKind.TRANSITION, entry.plan_id,
            unit_id=entry.unit_id, unit_kind=entry.unit_kind,
            from_state=entry.from_state, to_state=entry.to_state,
            reason=entry.reason,
            payload={"entry_id": entry.entry_id, "link": entry.link} if entry.link else {"entry_id": entry.entry_id},
        )

    def _emit(
        self,
        kind: EventKind,
        plan_id: str,
        *,
        unit_id: str = "",
        unit_kind: UnitKind = UnitKind.PLAN,
        from_state: str = "",
        to_state: str = "",
        reason: str = "",
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.event_bus.publish(
            ProgressEvent(
                kind=kind,
                plan_id=plan_id,
                unit_id=unit_id or plan_id,
                unit_kind=unit_kind,
                from_state=from_state,
                to_state=to_state,
                reason=reason,
                payload=payload or {},
            )
        )

    def _notify_operators(self, plan_id: str, message: str, *, kind: NotificationKind, link: str = "") -> None:
        if self.dispatcher is None:
            return
        try:
            self.dispatcher.notify(
                self.config.operator_audience, message, link, kind=kind, plan_id=plan_id
            )
        except NotificationDispatchError:
            logger.exception("Could not notify %s about plan %s", self.config.operator_audience, plan_id)
