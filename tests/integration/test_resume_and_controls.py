"""Integration tests — operator controls and failure containment.

Cancellation, the consecutive-failure pause, unblocking, test timeouts,
lease contention and concurrent batches.
"""

from __future__ import annotations

import pytest

from wavegate.core.batch_machine import InvalidTransitionError
from wavegate.models.config import PlannerLimits
from wavegate.models.notifications import NotificationKind
from wavegate.models.plan import BatchStatus, PlanStatus, WaveStatus

from tests.conftest import FakeTestRunner

BEFORE = "def add(a, b):\n    return a+b\n"
AFTER = "def add(a, b):\n    return a + b\n"


@pytest.fixture
def four_files(make_change, make_request):
    """Four independent LOW changes; one file per batch keeps them apart."""
    return make_request([make_change(f"pkg/{name}.py") for name in "abcd"])


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancel:
    def test_cancel_before_execution_blocks_everything(
        self, orchestrator, gated_request, test_runner
    ):
        plan_id = orchestrator.submit(gated_request, execute=False)

        assert orchestrator.cancel(plan_id) == PlanStatus.CANCELLED

        snapshot = orchestrator.get_progress(plan_id)
        assert snapshot.status == PlanStatus.CANCELLED
        assert all(b.status == BatchStatus.BLOCKED for b in snapshot.batches)
        assert all(w.status == WaveStatus.BLOCKED for w in snapshot.waves)
        assert test_runner.calls == []

    def test_cancelled_plan_does_not_run(self, orchestrator, gated_request, test_runner):
        plan_id = orchestrator.submit(gated_request, execute=False)
        orchestrator.cancel(plan_id)

        assert orchestrator.run(plan_id) == PlanStatus.CANCELLED
        assert test_runner.calls == []

    def test_cancel_mid_run_stops_after_current_batch(
        self, make_orchestrator, make_change, make_request, workspace
    ):
        holder = {}

        def cancel_once(paths):
            if "orch" in holder and not holder.get("done"):
                holder["done"] = True
                orch = holder["orch"]
                orch.cancel(orch.ledger.get_all_plan_ids()[0])

        orch = make_orchestrator(
            runner=FakeTestRunner(on_run=cancel_once),
            limits=PlannerLimits(max_files_per_batch=1),
        )
        holder["orch"] = orch
        request = make_request([make_change(f"pkg/{name}.py") for name in "abc"])

        plan_id = orch.submit(request)

        snapshot = orch.get_progress(plan_id)
        assert snapshot.status == PlanStatus.CANCELLED
        assert [b.status for b in snapshot.batches] == [
            BatchStatus.COMMITTED, BatchStatus.BLOCKED, BatchStatus.BLOCKED,
        ]
        assert workspace.read("pkg/a.py") == AFTER
        assert workspace.read("pkg/b.py") == BEFORE
        assert workspace.read("pkg/c.py") == BEFORE

    def test_cancel_leaves_awaiting_batch_awaiting(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)

        orchestrator.cancel(plan_id)

        snapshot = orchestrator.get_progress(plan_id)
        assert snapshot.status == PlanStatus.CANCELLED
        assert snapshot.waves[1].batches[0].status == BatchStatus.AWAITING_APPROVAL
        assert snapshot.waves[1].status == WaveStatus.RUNNING
        assert snapshot.waves[0].status == WaveStatus.COMPLETED


# ---------------------------------------------------------------------------
# Consecutive failures pause the wave
# ---------------------------------------------------------------------------


class TestPauseAndUnblock:
    @pytest.fixture
    def paused(self, make_orchestrator, four_files):
        runner = FakeTestRunner(fail_paths={"pkg/a.py", "pkg/b.py"})
        orch = make_orchestrator(
            runner=runner,
            consecutive_failure_threshold=2,
            limits=PlannerLimits(max_files_per_batch=1),
        )
        plan_id = orch.submit(four_files)
        return orch, plan_id, runner

    def test_wave_paused_after_threshold(self, paused, sink):
        orch, plan_id, runner = paused
        snapshot = orch.get_progress(plan_id)

        assert len(snapshot.waves) == 1
        assert [b.status for b in snapshot.batches] == [
            BatchStatus.ROLLED_BACK, BatchStatus.ROLLED_BACK,
            BatchStatus.BLOCKED, BatchStatus.BLOCKED,
        ]
        assert snapshot.waves[0].status == WaveStatus.PAUSED
        assert snapshot.status == PlanStatus.PAUSED
        assert len(runner.calls) == 2
        assert any(n.kind == NotificationKind.WAVE_PAUSED for n in sink.received)

    def test_run_does_not_continue_a_paused_plan(self, paused):
        orch, plan_id, runner = paused

        assert orch.run(plan_id) == PlanStatus.PAUSED
        assert len(runner.calls) == 2

    def test_unblock_wave_runs_remaining_batches(self, paused, workspace):
        orch, plan_id, _ = paused
        wave_id = orch.load_plan(plan_id).waves[0].wave_id

        status = orch.unblock_wave(wave_id)

        assert status == PlanStatus.PARTIAL
        snapshot = orch.get_progress(plan_id)
        assert [b.status for b in snapshot.batches][2:] == [
            BatchStatus.COMMITTED, BatchStatus.COMMITTED,
        ]
        assert snapshot.waves[0].status == WaveStatus.ROLLED_BACK
        assert workspace.read("pkg/a.py") == BEFORE
        assert workspace.read("pkg/d.py") == AFTER

    def test_resume_from_new_process_unpauses(self, paused, make_orchestrator):
        _, plan_id, _ = paused

        status = make_orchestrator().resume(plan_id)

        assert status == PlanStatus.PARTIAL

    def test_unblock_of_running_wave_rejected(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)
        wave_id = orchestrator.load_plan(plan_id).waves[1].wave_id

        with pytest.raises(InvalidTransitionError, match="not paused"):
            orchestrator.unblock_wave(wave_id)

    def test_streak_resets_on_success(self, make_orchestrator, make_change, make_request):
        runner = FakeTestRunner(fail_paths={"pkg/a.py", "pkg/c.py"})
        orch = make_orchestrator(
            runner=runner,
            consecutive_failure_threshold=2,
            limits=PlannerLimits(max_files_per_batch=1),
        )
        request = make_request([make_change(f"pkg/{name}.py") for name in "abcd"])

        plan_id = orch.submit(request)

        assert len(runner.calls) == 4
        assert orch.get_progress(plan_id).status == PlanStatus.PARTIAL


# ---------------------------------------------------------------------------
# Test runner failure modes
# ---------------------------------------------------------------------------


class TestRunnerFailureModes:
    def test_timeout_counts_as_failure(self, make_orchestrator, make_change, make_request, workspace):
        orch = make_orchestrator(
            runner=FakeTestRunner(delay=1.0), test_timeout_seconds=0.05,
        )
        plan_id = orch.submit(make_request([make_change()]))

        batch = orch.get_progress(plan_id).batches[0]
        assert batch.status == BatchStatus.ROLLED_BACK
        entry = orch.ledger.get_unit_history(plan_id, batch.batch_id)[-1]
        assert entry.details["timed_out"] is True
        assert entry.details["failures"] == ["<timeout>"]
        assert workspace.read("src/util.py") == BEFORE

    def test_runner_exception_counts_as_failure(self, make_orchestrator, make_change, make_request):
        orch = make_orchestrator(runner=FakeTestRunner(raises=RuntimeError("runner crashed")))
        plan_id = orch.submit(make_request([make_change()]))

        batch = orch.get_progress(plan_id).batches[0]
        assert batch.status == BatchStatus.ROLLED_BACK
        entry = orch.ledger.get_unit_history(plan_id, batch.batch_id)[-1]
        assert "runner crashed" in entry.details["failures"][0]


# ---------------------------------------------------------------------------
# Codebase lease
# ---------------------------------------------------------------------------


class TestLease:
    def test_held_lease_rolls_batch_back_untouched(
        self, make_orchestrator, make_change, make_request, lock_registry, workspace, test_runner
    ):
        orch = make_orchestrator(lock_timeout_seconds=0.05)
        lease = lock_registry.lease_for(workspace.identity)
        lease.acquire("another-writer", timeout=0)
        try:
            plan_id = orch.submit(make_request([make_change()]))
        finally:
            lease.release("another-writer")

        batch = orch.get_progress(plan_id).batches[0]
        assert batch.status == BatchStatus.ROLLED_BACK
        assert batch.reason.startswith("ApplyError:")
        assert workspace.read("src/util.py") == BEFORE
        assert test_runner.calls == []

    def test_lease_free_after_plan(self, orchestrator, make_change, make_request):
        orchestrator.submit(make_request([make_change()]))

        assert orchestrator.lease.holder is None
        assert orchestrator.lease.conflicting_claims("probe", ["src/util.py"]) == []

    def test_awaiting_batch_keeps_its_claims(self, orchestrator, gated_request):
        orchestrator.submit(gated_request)

        assert orchestrator.lease.conflicting_claims("probe", ["src/auth.ts"]) == ["src/auth.ts"]
        assert orchestrator.lease.conflicting_claims("probe", ["src/format_a.ts"]) == []

    def test_concurrent_batches_all_commit(self, make_orchestrator, four_files, workspace):
        orch = make_orchestrator(
            max_concurrent_batches=2, limits=PlannerLimits(max_files_per_batch=1),
        )
        plan_id = orch.submit(four_files)

        snapshot = orch.get_progress(plan_id)
        assert snapshot.status == PlanStatus.COMPLETED
        assert snapshot.committed_count == 4
        assert all(workspace.read(f"pkg/{n}.py") == AFTER for n in "abcd")
        assert orch.ledger.verify_chain(plan_id)
