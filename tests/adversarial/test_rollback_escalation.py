"""Adversarial tests: rollbacks that try to reach beyond their scope.

These tests verify that:
1. No change, and no rollback, can touch a path outside the workspace
2. A rollback only restores files its checkpoint covers
3. A file-scoped rollback cannot be widened to other batches' files
4. A corrupted snapshot is never written back into the working tree
5. A restore that cannot be proven byte-identical halts the plan
"""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from wavegate.collaborators.workspace import WorkspacePathError
from wavegate.core.errors import RollbackVerificationFailed
from wavegate.core.rollback_manager import RollbackManager
from wavegate.core.snapshot_store import SnapshotIntegrityError
from wavegate.models.changes import FileChange, TransformationKind
from wavegate.models.config import PlannerLimits
from wavegate.models.plan import BatchStatus, PlanStatus

from tests.conftest import FakeTestRunner, SabotagedVersionControl

ADD_BEFORE = "def add(a, b):\n    return a+b\n"
ADD_AFTER = "def add(a, b):\n    return a + b\n"


@pytest.fixture
def completed(make_orchestrator, make_change, make_request, workspace):
    """Two committed LOW batches in one wave, plus a bystander file."""
    orchestrator = make_orchestrator(limits=PlannerLimits(max_files_per_batch=1))
    workspace.write("src/bystander.py", "KEEP = True\n")
    request = make_request([
        make_change("src/util.py", ADD_BEFORE, ADD_AFTER),
        make_change("src/other.py", "def o(x):\n    return x*2\n", "def o(x):\n    return x * 2\n"),
    ])
    plan_id = orchestrator.submit(request)
    assert orchestrator.get_progress(plan_id).status == PlanStatus.COMPLETED
    batches = [b.batch_id for b in orchestrator.load_plan(plan_id).batches]
    return orchestrator, plan_id, batches


def _batch_with(orch, plan_id: str, path: str) -> str:
    return next(b.batch_id for b in orch.load_plan(plan_id).batches if path in b.paths)


class TestWorkspaceEscape:
    @pytest.mark.parametrize("path", ["../outside.py", "/etc/passwd", "src/../../outside.py", ""])
    def test_change_outside_workspace_refused(self, path):
        with pytest.raises(ValidationError, match="not a path inside the workspace"):
            FileChange(
                path=path,
                transformation_kind=TransformationKind.FORMATTING,
                before_content="x = 1\n",
                after_content="x = 2\n",
            )

    def test_symlink_escape_refused(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, workspace.root / "linked")
        with pytest.raises(WorkspacePathError):
            workspace.write("linked/evil.py", "x = 1\n")
        assert not (outside / "evil.py").exists()


class TestScopedRollback:
    def test_file_rollback_cannot_name_foreign_paths(self, completed, workspace):
        orch, plan_id, _batches = completed
        util_batch = _batch_with(orch, plan_id, "src/util.py")
        with pytest.raises(ValueError, match="needs paths from the batch"):
            orch.rollback("file", util_batch, ["src/other.py"])
        with pytest.raises(ValueError):
            orch.rollback("file", util_batch, ["src/bystander.py"])
        assert workspace.read("src/util.py") == ADD_AFTER
        assert workspace.read("src/other.py").endswith("x * 2\n")

    def test_batch_rollback_leaves_other_batches(self, completed, workspace):
        orch, plan_id, _batches = completed
        util_batch = _batch_with(orch, plan_id, "src/util.py")
        result = orch.rollback("batch", util_batch)

        assert result.restored_paths == ["src/util.py"]
        assert workspace.read("src/util.py") == ADD_BEFORE
        assert workspace.read("src/other.py").endswith("x * 2\n")
        assert workspace.read("src/bystander.py") == "KEEP = True\n"
        other_batch = _batch_with(orch, plan_id, "src/other.py")
        assert orch.machine.get_state(plan_id, other_batch) == BatchStatus.COMMITTED

    def test_restore_subset_refuses_uncovered_paths(self, workspace, vcs, store):
        workspace.write("src/util.py", ADD_BEFORE)
        manager = RollbackManager(workspace, vcs, store)
        checkpoint = manager.create_checkpoint("tp-1/w1/b1", ["src/util.py"])
        with pytest.raises(KeyError, match="src/bystander.py"):
            manager.restore_subset(checkpoint, ["src/bystander.py"])

    def test_rollback_of_unknown_plan(self, orchestrator):
        with pytest.raises(KeyError):
            orchestrator.rollback("batch", "tp-forged/w1/b1")


class TestCorruptedSnapshot:
    def test_tampered_blob_never_restored(self, completed, store, workspace):
        orch, plan_id, _batches = completed
        address = store.store_text(ADD_BEFORE)
        blob = store._blob_path(store._extract_digest(address))
        blob.write_bytes(b"import os; os.system('rm -rf /')\n")

        with pytest.raises(SnapshotIntegrityError):
            orch.rollback("batch", _batch_with(orch, plan_id, "src/util.py"))
        assert workspace.read("src/util.py") == ADD_AFTER


class TestUnprovableRestore:
    def test_plan_halts_and_stays_halted(
        self, make_orchestrator, make_change, make_request, workspace, store, engine_config
    ):
        sabotaged = SabotagedVersionControl(
            workspace, store, engine_config.snapshot_store_path.parent / "refs.json"
        )
        orch = make_orchestrator(runner=FakeTestRunner(passed=False), version_control=sabotaged)
        with pytest.raises(RollbackVerificationFailed):
            orch.submit(make_request([make_change()]))
        plan_id = orch.ledger.get_all_plan_ids()[0]

        later = make_orchestrator()
        assert later.run(plan_id) == PlanStatus.HALTED
        assert later.resume(plan_id) == PlanStatus.HALTED
        assert later.get_progress(plan_id).batches[0].status == BatchStatus.FAILED
