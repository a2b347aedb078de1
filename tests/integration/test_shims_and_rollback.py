"""Integration tests — compatibility shims and operator rollback."""

from __future__ import annotations

import pytest

from wavegate.core.compat_layer import strip_shims
from wavegate.core.errors import RollbackVerificationFailed
from wavegate.models.approvals import ApprovalStatus
from wavegate.models.changes import TransformationKind
from wavegate.models.checkpoints import RollbackScope
from wavegate.models.ledger import UnitKind
from wavegate.models.notifications import NotificationKind
from wavegate.models.plan import BatchStatus, PlanStatus, WaveStatus

from tests.conftest import FakeTestRunner, SabotagedVersionControl

UTIL_BEFORE = "def fetch(url):\n    return url\n"
UTIL_AFTER = "def fetch_url(url):\n    return url\n"
MAIN_BEFORE = "from lib.util import fetch\n\n\ndef run():\n    return fetch('x')\n"
MAIN_AFTER = "from lib.util import fetch_url\n\n\ndef run():\n    return fetch_url('x')\n"


@pytest.fixture
def rename_request(make_change, make_request):
    """lib/util.py renames fetch; app/main.py follows one wave later."""
    return make_request([
        make_change("lib/util.py", UTIL_BEFORE, UTIL_AFTER, kind=TransformationKind.RENAME_SYMBOL),
        make_change(
            "app/main.py", MAIN_BEFORE, MAIN_AFTER,
            kind=TransformationKind.RENAME_SYMBOL, depends_on=["lib/util.py"],
        ),
    ])


def _shim_entries(orch, plan_id):
    return [e for e in orch.ledger.get_plan_entries(plan_id) if e.unit_kind == UnitKind.SHIM]


# ---------------------------------------------------------------------------
# Compatibility shims
# ---------------------------------------------------------------------------


class TestShimLifecycle:
    def test_shim_present_while_dependent_wave_runs(
        self, make_orchestrator, rename_request, workspace
    ):
        seen: list[str | None] = []
        runner = FakeTestRunner(
            on_run=lambda paths: seen.append(workspace.read("lib/util.py"))
            if paths == ["app/main.py"] else None
        )
        orch = make_orchestrator(runner=runner, generate_compat_shims=True)

        plan_id = orch.submit(rename_request)

        assert orch.get_progress(plan_id).status == PlanStatus.COMPLETED
        assert len(seen) == 1
        assert "# wavegate:shim:begin" in seen[0]
        assert "def fetch(*args, **kwargs):" in seen[0]
        assert "return fetch_url(*args, **kwargs)" in seen[0]
        assert strip_shims(seen[0]) == UTIL_AFTER

    def test_shim_removed_after_dependents_migrate(
        self, make_orchestrator, rename_request, workspace
    ):
        orch = make_orchestrator(generate_compat_shims=True)
        plan_id = orch.submit(rename_request)

        assert workspace.read("lib/util.py") == UTIL_AFTER
        assert workspace.read("app/main.py") == MAIN_AFTER

        entries = _shim_entries(orch, plan_id)
        assert [e.state_transition for e in entries] == ["none->installed", "installed->removed"]
        plan = orch.load_plan(plan_id)
        assert entries[0].details["remove_after_wave_id"] == plan.waves[1].wave_id
        assert orch.get_progress(plan_id).active_shims == []

    def test_no_shims_unless_enabled(self, orchestrator, rename_request, workspace):
        plan_id = orchestrator.submit(rename_request)

        assert _shim_entries(orchestrator, plan_id) == []
        assert workspace.read("lib/util.py") == UTIL_AFTER

    def test_shim_stays_when_dependent_wave_fails(self, make_orchestrator, rename_request, workspace):
        orch = make_orchestrator(
            runner=FakeTestRunner(fail_paths={"app/main.py"}), generate_compat_shims=True,
        )
        plan_id = orch.submit(rename_request)

        snapshot = orch.get_progress(plan_id)
        assert snapshot.status == PlanStatus.PARTIAL
        assert len(snapshot.active_shims) == 1
        assert workspace.read("app/main.py") == MAIN_BEFORE
        assert "def fetch(*args, **kwargs):" in workspace.read("lib/util.py")

    def test_reverse_shim_on_rollback(self, make_orchestrator, rename_request, workspace):
        orch = make_orchestrator(generate_compat_shims=True, regenerate_shims_on_rollback=True)
        plan_id = orch.submit(rename_request)
        util_batch = orch.load_plan(plan_id).waves[0].batches[0].batch_id

        result = orch.rollback(RollbackScope.BATCH, util_batch)

        assert result.success
        content = workspace.read("lib/util.py")
        assert "def fetch_url(*args, **kwargs):" in content
        assert "return fetch(*args, **kwargs)" in content
        assert strip_shims(content) == UTIL_BEFORE
        assert len(orch.get_progress(plan_id).active_shims) == 1


# ---------------------------------------------------------------------------
# Operator rollback
# ---------------------------------------------------------------------------


class TestOperatorRollback:
    @pytest.fixture
    def completed(self, orchestrator, gated_request):
        plan_id = orchestrator.submit(gated_request)
        request_id = orchestrator.get_progress(plan_id).waves[1].batches[0].approval_request_id
        orchestrator.approve(request_id, True, "alice")
        return orchestrator, plan_id

    def test_batch_rollback_restores_committed_files(self, completed, workspace):
        orch, plan_id = completed
        batch_id = orch.load_plan(plan_id).waves[0].batches[0].batch_id

        result = orch.rollback("batch", batch_id)

        assert result.success
        assert result.rolled_back_batches == [batch_id]
        assert sorted(result.restored_paths) == ["src/format_a.ts", "src/format_b.ts"]
        assert workspace.read("src/format_a.ts") == "export const a=1;\n"
        snapshot = orch.get_progress(plan_id)
        assert snapshot.batch(batch_id).status == BatchStatus.ROLLED_BACK
        assert snapshot.waves[0].status == WaveStatus.ROLLED_BACK
        assert snapshot.status == PlanStatus.PARTIAL

    def test_revert_is_committed(self, completed, vcs):
        orch, plan_id = completed
        plan = orch.load_plan(plan_id)
        commits_before = len(vcs.log(plan.branch))

        orch.rollback(RollbackScope.BATCH, plan.waves[0].batches[0].batch_id)

        log = vcs.log(plan.branch)
        assert len(log) == commits_before + 1
        assert log[0]["message"].startswith("wavegate: revert")

    def test_file_rollback_keeps_batch_committed(self, completed, workspace):
        orch, plan_id = completed
        batch_id = orch.load_plan(plan_id).waves[0].batches[0].batch_id

        result = orch.rollback(RollbackScope.FILE, batch_id, ["src/format_a.ts"])

        assert result.success
        assert result.restored_paths == ["src/format_a.ts"]
        assert result.rolled_back_batches == []
        assert workspace.read("src/format_a.ts") == "export const a=1;\n"
        assert workspace.read("src/format_b.ts") == "export const b = 2;\n"
        assert orch.machine.get_state(plan_id, batch_id) == BatchStatus.COMMITTED
        assert orch.get_progress(plan_id).status == PlanStatus.COMPLETED

        last = [
            e for e in orch.ledger.get_plan_entries(plan_id)
            if e.unit_kind == UnitKind.CHECKPOINT and e.details.get("batch_id") == batch_id
        ][-1]
        assert last.state_transition == "released->released"

    def test_file_rollback_needs_batch_paths(self, completed):
        orch, plan_id = completed
        batch_id = orch.load_plan(plan_id).waves[0].batches[0].batch_id

        with pytest.raises(ValueError):
            orch.rollback(RollbackScope.FILE, batch_id)
        with pytest.raises(ValueError, match="src/auth.ts"):
            orch.rollback(RollbackScope.FILE, batch_id, ["src/auth.ts"])

    def test_manual_edit_is_a_conflict(self, completed, workspace):
        orch, plan_id = completed
        batch_id = orch.load_plan(plan_id).waves[0].batches[0].batch_id
        workspace.write("src/format_a.ts", "export const a = 42;\n")

        result = orch.rollback(RollbackScope.BATCH, batch_id)

        assert not result.success
        assert result.conflicts == ["src/format_a.ts"]
        assert workspace.read("src/format_a.ts") == "export const a = 42;\n"
        assert workspace.read("src/format_b.ts") == "export const b = 2;\n"
        assert orch.machine.get_state(plan_id, batch_id) == BatchStatus.COMMITTED

    def test_wave_rollback_reverts_in_reverse_order(self, completed, workspace, gated_request):
        orch, plan_id = completed
        wave_id = orch.load_plan(plan_id).waves[1].wave_id

        result = orch.rollback(RollbackScope.WAVE, wave_id)

        assert result.success
        auth = next(c for c in gated_request.changes if c.path == "src/auth.ts")
        assert workspace.read("src/auth.ts") == auth.before_content
        assert orch.get_progress(plan_id).waves[1].status == WaveStatus.ROLLED_BACK

    def test_withdraw_awaiting_batch(self, orchestrator, gated_request, workspace):
        plan_id = orchestrator.submit(gated_request)
        batch = orchestrator.get_progress(plan_id).waves[1].batches[0]

        result = orchestrator.rollback(RollbackScope.BATCH, batch.batch_id)

        assert result.success
        assert result.rolled_back_batches == [batch.batch_id]
        req = orchestrator.approval_gate.get(batch.approval_request_id)
        assert req.status == ApprovalStatus.REJECTED
        assert req.decided_by == "system:rollback"
        snapshot = orchestrator.get_progress(plan_id)
        assert snapshot.status == PlanStatus.PARTIAL
        assert snapshot.pending_approvals == []
        auth = next(c for c in gated_request.changes if c.path == "src/auth.ts")
        assert workspace.read("src/auth.ts") == auth.before_content

    def test_file_rollback_of_awaiting_batch_refused(self, orchestrator, gated_request, workspace):
        plan_id = orchestrator.submit(gated_request)
        batch = orchestrator.get_progress(plan_id).waves[1].batches[0]
        auth = next(c for c in gated_request.changes if c.path == "src/auth.ts")

        result = orchestrator.rollback(RollbackScope.FILE, batch.batch_id, ["src/auth.ts"])

        assert not result.success
        assert result.restored_paths == []
        assert "awaiting_approval; nothing to roll back" in result.message
        assert workspace.read("src/auth.ts") == auth.after_content
        assert orchestrator.machine.get_state(plan_id, batch.batch_id) == BatchStatus.AWAITING_APPROVAL
        assert orchestrator.approval_gate.get(batch.approval_request_id).is_pending

    def test_second_batch_rollback_refused(self, completed):
        orch, plan_id = completed
        batch_id = orch.load_plan(plan_id).waves[0].batches[0].batch_id
        assert orch.rollback(RollbackScope.BATCH, batch_id).success
        entries = len(orch.ledger.get_plan_entries(plan_id))

        again = orch.rollback(RollbackScope.BATCH, batch_id)

        assert not again.success
        assert again.message == f"{batch_id} is rolled_back; nothing to roll back"
        assert again.rolled_back_batches == []
        assert len(orch.ledger.get_plan_entries(plan_id)) == entries


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class TestRollbackEscalation:
    def test_unverifiable_restore_halts_plan(
        self, make_orchestrator, make_change, make_request, workspace, store, engine_config, sink
    ):
        sabotaged = SabotagedVersionControl(
            workspace, store, engine_config.snapshot_store_path.parent / "refs.json"
        )
        orch = make_orchestrator(runner=FakeTestRunner(passed=False), version_control=sabotaged)

        with pytest.raises(RollbackVerificationFailed) as excinfo:
            orch.submit(make_request([make_change()]))

        assert excinfo.value.mismatched_paths == ["src/util.py"]
        plan_id = orch.ledger.get_all_plan_ids()[0]
        snapshot = orch.get_progress(plan_id)
        assert snapshot.status == PlanStatus.HALTED
        assert snapshot.batches[0].status == BatchStatus.FAILED
        escalations = [n for n in sink.received if n.kind == NotificationKind.ESCALATION]
        assert len(escalations) == 1
        assert "src/util.py" in escalations[0].message

    def test_halted_plan_is_not_resumed(
        self, make_orchestrator, make_change, make_request, workspace, store, engine_config
    ):
        sabotaged = SabotagedVersionControl(
            workspace, store, engine_config.snapshot_store_path.parent / "refs.json"
        )
        orch = make_orchestrator(runner=FakeTestRunner(passed=False), version_control=sabotaged)
        with pytest.raises(RollbackVerificationFailed):
            orch.submit(make_request([make_change()]))
        plan_id = orch.ledger.get_all_plan_ids()[0]

        assert make_orchestrator().resume(plan_id) == PlanStatus.HALTED
