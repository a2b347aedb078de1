"""Integration tests — whole plans driven end to end.

Covers the three reference scenarios:
1. A security-sensitive file is gated on its own while formatting-only
   files commit without approval.
2. An approval that times out rolls the batch back and restores its files.
3. A failing wave blocks every wave that depends on it.
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from wavegate.core.orchestrator import Orchestrator
from wavegate.models.approvals import ApprovalStatus, ExpiryPolicy
from wavegate.models.changes import FileChange, TransformationRequest
from wavegate.models.ledger import UnitKind
from wavegate.models.notifications import NotificationKind
from wavegate.models.plan import BatchStatus, PlanStatus, WaveStatus
from wavegate.models.risk import RiskLevel

from tests.conftest import FakeTestRunner


def _contents(workspace, request: TransformationRequest) -> dict[str, str | None]:
    return {c.path: workspace.read(c.path) for c in request.changes}


# ---------------------------------------------------------------------------
# Scenario 1: gated security file, ungated formatting files
# ---------------------------------------------------------------------------


class TestSecurityFileIsGated:
    """auth.ts is scored gated and isolated; the formatting files commit."""

    @pytest.fixture
    def run(self, orchestrator: Orchestrator, gated_request: TransformationRequest):
        plan_id = orchestrator.submit(gated_request)
        return orchestrator, plan_id

    def test_plan_shape(self, run):
        orch, plan_id = run
        plan = orch.load_plan(plan_id)

        assert [w.boundary_reason for w in plan.waves] == ["start", "risk_tier"]
        formatting, gated = plan.waves
        assert [b.paths for b in formatting.batches] == [["src/format_a.ts", "src/format_b.ts"]]
        assert [b.paths for b in gated.batches] == [["src/auth.ts"]]
        assert formatting.batches[0].risk_level == RiskLevel.LOW
        assert gated.batches[0].risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        assert gated.batches[0].requires_approval

    def test_formatting_batch_committed_without_approval(self, run, workspace):
        orch, plan_id = run
        snapshot = orch.get_progress(plan_id)

        formatting = snapshot.waves[0].batches[0]
        assert formatting.status == BatchStatus.COMMITTED
        assert formatting.approval_request_id is None
        assert formatting.commit_id is not None
        assert snapshot.waves[0].status == WaveStatus.COMPLETED
        assert workspace.read("src/format_a.ts") == "export const a = 1;\n"
        assert workspace.read("src/format_b.ts") == "export const b = 2;\n"

    def test_auth_batch_awaits_approval(self, run, workspace, sink):
        orch, plan_id = run
        snapshot = orch.get_progress(plan_id)

        auth = snapshot.waves[1].batches[0]
        assert auth.status == BatchStatus.AWAITING_APPROVAL
        assert auth.approval_request_id in snapshot.pending_approvals
        assert snapshot.status == PlanStatus.AWAITING_APPROVAL
        # Applied and tested, but not committed
        assert "check(user, password)" in workspace.read("src/auth.ts")
        assert any(n.kind == NotificationKind.APPROVAL_REQUESTED for n in sink.received)

    def test_gated_batch_ran_full_suite(self, run, test_runner: FakeTestRunner):
        assert (["src/format_a.ts", "src/format_b.ts"], False) in test_runner.calls
        assert (["src/auth.ts"], True) in test_runner.calls

    def test_approval_commits_and_completes(self, run):
        orch, plan_id = run
        request_id = orch.get_progress(plan_id).waves[1].batches[0].approval_request_id

        decided = orch.approve(request_id, True, "alice")

        assert decided.status == ApprovalStatus.APPROVED
        assert decided.decided_by == "alice"
        snapshot = orch.get_progress(plan_id)
        assert snapshot.status == PlanStatus.COMPLETED
        assert snapshot.committed_count == 2
        assert snapshot.pending_approvals == []
        assert orch.ledger.verify_chain(plan_id)

    def test_rejection_rolls_back_auth_only(self, run, workspace, gated_request):
        orch, plan_id = run
        request_id = orch.get_progress(plan_id).waves[1].batches[0].approval_request_id

        orch.approve(request_id, False, "bob")

        snapshot = orch.get_progress(plan_id)
        assert snapshot.waves[1].batches[0].status == BatchStatus.ROLLED_BACK
        assert snapshot.waves[1].status == WaveStatus.ROLLED_BACK
        assert snapshot.waves[0].status == WaveStatus.COMPLETED
        assert snapshot.status == PlanStatus.PARTIAL
        auth = next(c for c in gated_request.changes if c.path == "src/auth.ts")
        assert workspace.read("src/auth.ts") == auth.before_content


# ---------------------------------------------------------------------------
# Scenario 2: approval timeout
# ---------------------------------------------------------------------------


class TestApprovalTimeout:
    """No decision by the deadline: the batch rolls back, files are restored."""

    def test_expired_approval_rolls_back_and_restores(
        self, orchestrator, gated_request, workspace, clock
    ):
        plan_id = orchestrator.submit(gated_request)
        batch_id = orchestrator.load_plan(plan_id).waves[1].batches[0].batch_id

        clock.advance(hours=2)
        changed = orchestrator.tick()

        assert [req.unit_id for req in changed] == [batch_id]
        assert changed[0].status == ApprovalStatus.EXPIRED
        assert orchestrator.machine.get_state(plan_id, batch_id) == BatchStatus.ROLLED_BACK
        auth = next(c for c in gated_request.changes if c.path == "src/auth.ts")
        assert workspace.read("src/auth.ts") == auth.before_content

        history = orchestrator.ledger.get_unit_history(plan_id, batch_id)
        assert history[-1].state_transition == "awaiting_approval->rolled_back"
        assert history[-1].details["error"] == "approval"
        assert history[-1].details["status"] == "expired"

    def test_tick_before_deadline_changes_nothing(self, orchestrator, gated_request, clock):
        plan_id = orchestrator.submit(gated_request)
        clock.advance(minutes=30)

        assert orchestrator.tick() == []
        assert orchestrator.get_progress(plan_id).status == PlanStatus.AWAITING_APPROVAL

    def test_expiry_under_approve_policy_commits(self, make_orchestrator, gated_request, clock):
        orch = make_orchestrator(expiry_policy=ExpiryPolicy.APPROVE)
        plan_id = orch.submit(gated_request)

        clock.advance(hours=2)
        changed = orch.tick()

        assert changed[0].status == ApprovalStatus.APPROVED
        assert changed[0].decided_by == "system:expiry"
        assert orch.get_progress(plan_id).status == PlanStatus.COMPLETED


# ---------------------------------------------------------------------------
# Scenario 3: failing wave blocks its dependents
# ---------------------------------------------------------------------------


class TestFailedWaveBlocksDependents:
    """Wave 1's only batch fails its tests; wave 2 never starts."""

    @pytest.fixture
    def request_two_waves(
        self,
        make_change: Callable[..., FileChange],
        make_request: Callable[..., TransformationRequest],
    ) -> TransformationRequest:
        return make_request([
            make_change(
                "pkg/client.py",
                "from pkg.core import add\n\n\ndef total(a, b):\n    return add(a,b)\n",
                "from pkg.core import add\n\n\ndef total(a, b):\n    return add(a, b)\n",
                depends_on=["pkg/core.py"],
            ),
            make_change("pkg/core.py"),
        ])

    def test_wave_two_blocked(self, make_orchestrator, request_two_waves, workspace):
        orch = make_orchestrator(runner=FakeTestRunner(fail_paths={"pkg/core.py"}))
        plan_id = orch.submit(request_two_waves)
        plan = orch.load_plan(plan_id)

        assert [w.paths for w in plan.waves] == [["pkg/core.py"], ["pkg/client.py"]]
        assert plan.waves[1].prerequisite_wave_ids == [plan.waves[0].wave_id]

        snapshot = orch.get_progress(plan_id)
        assert snapshot.waves[0].status == WaveStatus.ROLLED_BACK
        assert snapshot.waves[1].status == WaveStatus.BLOCKED
        assert snapshot.waves[1].batches[0].status == BatchStatus.BLOCKED
        assert snapshot.status == PlanStatus.PARTIAL
        assert workspace.read("pkg/core.py") == "def add(a, b):\n    return a+b\n"

    def test_wave_two_never_started(self, make_orchestrator, request_two_waves):
        runner = FakeTestRunner(fail_paths={"pkg/core.py"})
        orch = make_orchestrator(runner=runner)
        plan_id = orch.submit(request_two_waves)

        assert [paths for paths, _ in runner.calls] == [["pkg/core.py"]]
        client_batch = orch.load_plan(plan_id).waves[1].batches[0].batch_id
        transitions = [e.state_transition for e in orch.ledger.get_unit_history(plan_id, client_batch)]
        assert transitions == ["pending->blocked"]

    def test_failure_reason_recorded(self, make_orchestrator, request_two_waves):
        orch = make_orchestrator(runner=FakeTestRunner(fail_paths={"pkg/core.py"}))
        plan_id = orch.submit(request_two_waves)

        core = orch.get_progress(plan_id).waves[0].batches[0]
        assert core.reason.startswith("TestFailure:")
        entry = orch.ledger.get_unit_history(plan_id, core.batch_id)[-1]
        assert entry.details["error"] == "tests"
        assert entry.details["failures"]
        assert entry.link.startswith("sha256:")


# ---------------------------------------------------------------------------
# Resume across processes
# ---------------------------------------------------------------------------


class CrashDuringTests(BaseException):
    """Simulates the process dying while tests run."""


class TestResumeFromNewOrchestrator:
    """A fresh Orchestrator over the same storage picks up where the last stopped."""

    def test_approval_decided_by_new_process(self, make_orchestrator, gated_request):
        first = make_orchestrator()
        plan_id = first.submit(gated_request)
        request_id = first.get_progress(plan_id).waves[1].batches[0].approval_request_id

        second = make_orchestrator()
        second.approve(request_id, True, "carol")

        assert second.get_progress(plan_id).status == PlanStatus.COMPLETED
        # The first process sees the same truth in the ledger
        assert first.tracker.snapshot(plan_id).status == PlanStatus.COMPLETED

    def test_resume_of_awaiting_plan_keeps_waiting(self, make_orchestrator, gated_request):
        plan_id = make_orchestrator().submit(gated_request)

        status = make_orchestrator().resume(plan_id)

        assert status == PlanStatus.AWAITING_APPROVAL

    def test_interrupted_batch_restored_on_resume(
        self, make_orchestrator, make_change, make_request, workspace
    ):
        request = make_request([make_change("src/util.py")])
        crashing = make_orchestrator(runner=FakeTestRunner(raises=CrashDuringTests()))
        with pytest.raises(CrashDuringTests):
            crashing.submit(request)

        plan_id = crashing.ledger.get_all_plan_ids()[0]
        batch_id = crashing.load_plan(plan_id).batches[0].batch_id
        assert crashing.machine.get_state(plan_id, batch_id) == BatchStatus.TESTING
        assert workspace.read("src/util.py") == "def add(a, b):\n    return a + b\n"

        status = make_orchestrator().resume(plan_id)

        assert status == PlanStatus.PARTIAL
        assert workspace.read("src/util.py") == "def add(a, b):\n    return a+b\n"
        last = make_orchestrator().ledger.get_unit_history(plan_id, batch_id)[-1]
        assert last.state_transition == "testing->rolled_back"
        assert "interrupted while testing" in last.reason


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TestAuditTrail:
    def test_every_unit_kind_is_recorded(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)
        kinds = {e.unit_kind for e in orchestrator.ledger.get_plan_entries(plan_id)}

        assert {UnitKind.PLAN, UnitKind.WAVE, UnitKind.BATCH,
                UnitKind.CHECKPOINT, UnitKind.APPROVAL} <= kinds
        assert orchestrator.ledger.verify_chain(plan_id)

    def test_committed_batch_walks_the_full_lifecycle(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)
        batch_id = orchestrator.load_plan(plan_id).waves[0].batches[0].batch_id

        transitions = [
            e.state_transition for e in orchestrator.ledger.get_unit_history(plan_id, batch_id)
        ]
        assert transitions == [
            "pending->checkpointed",
            "checkpointed->applying",
            "applying->verifying",
            "verifying->testing",
            "testing->committed",
        ]

    def test_checkpoint_released_on_commit(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)
        checkpoints = [
            e for e in orchestrator.ledger.get_plan_entries(plan_id)
            if e.unit_kind == UnitKind.CHECKPOINT
        ]
        released = [e for e in checkpoints if e.state_transition == "created->released"]

        assert len([e for e in checkpoints if e.from_state == "none"]) == 2
        assert len(released) == 1
        assert released[0].details["commit_id"].startswith("sha256:")
