"""Checkpoint / Rollback Manager.

``create_checkpoint`` captures exactly the files a batch will touch;
``restore`` rewrites them and proves byte-for-byte equality afterwards.
A failed proof raises ``RollbackVerificationFailed``, which the caller
must escalate.

Checkpoint manifests are stored in the content-addressed store, so a new
process can ``load`` a checkpoint from the address recorded in the
ledger.  Blobs are never deleted; releasing a checkpoint only flips its
``released`` flag.
"""

from __future__ import annotations

import logging

from wavegate.collaborators.protocols import VersionControl, Workspace
from wavegate.core.errors import RollbackVerificationFailed
from wavegate.core.hasher import text_address
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.models.checkpoints import Checkpoint, RollbackPoint, RollbackScope

logger = logging.getLogger(__name__)


class CheckpointReleasedError(RuntimeError):
    """Raised when a full restore is requested from a released checkpoint."""


class RollbackConflictError(RuntimeError):
    """Raised when files changed after commit and a partial restore would clobber them."""

    def __init__(self, message: str, conflicts: list[str]) -> None:
        super().__init__(message)
        self.conflicts = conflicts


class RollbackManager:
    """Snapshot, restore and partial-restore primitives.

    Parameters
    ----------
    workspace:
        The working copy being transformed.
    vcs:
        Provides ``snapshot`` / ``restore``.
    store:
        Holds checkpoint manifests and file blobs.
    """

    def __init__(
        self,
        workspace: Workspace,
        vcs: VersionControl,
        store: ContentAddressedStore,
    ) -> None:
        self._workspace = workspace
        self._vcs = vcs
        self._store = store

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def create_checkpoint(self, batch_id: str, paths: list[str]) -> Checkpoint:
        files: dict[str, str | None] = {}
        for path in sorted(paths):
            content = self._workspace.read(path)
            files[path] = None if content is None else self._store.store_text(content)
        checkpoint = Checkpoint(
            batch_id=batch_id,
            snapshot_ref=self._vcs.snapshot(sorted(paths)),
            files=files,
        )
        logger.debug("Checkpoint %s for %s covers %d file(s)",
                     checkpoint.checkpoint_id, batch_id, len(files))
        return checkpoint

    def manifest_ref(self, checkpoint: Checkpoint) -> str:
        """Persist *checkpoint* and return its content address."""
        return self._store.store_json(checkpoint.model_dump(mode="json"))

    def load(self, manifest_ref: str) -> Checkpoint:
        return Checkpoint.model_validate_json(self._store.retrieve(manifest_ref))

    def release(self, checkpoint: Checkpoint) -> Checkpoint:
        """Mark a committed batch's checkpoint as no longer fully restorable."""
        return checkpoint.model_copy(update={"released": True})

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def mismatched_paths(self, checkpoint: Checkpoint, paths: list[str]) -> list[str]:
        """Paths whose working content differs from the checkpoint."""
        mismatched = []
        for path in paths:
            expected = checkpoint.files[path]
            actual = self._workspace.read(path)
            if expected is None:
                if actual is not None:
                    mismatched.append(path)
            elif actual is None or text_address(actual) != expected:
                mismatched.append(path)
        return mismatched

    def _restore_paths(self, checkpoint: Checkpoint, paths: list[str]) -> list[str]:
        try:
            self._vcs.restore(checkpoint.snapshot_ref, paths)
        except OSError as exc:
            logger.critical("Restore of %s failed mid-write: %s", checkpoint.checkpoint_id, exc)
            raise RollbackVerificationFailed(
                f"Restore from {checkpoint.checkpoint_id} failed: {exc}",
                mismatched_paths=self.mismatched_paths(checkpoint, paths),
            ) from exc

        mismatched = self.mismatched_paths(checkpoint, paths)
        if mismatched:
            logger.critical(
                "Rollback verification failed for %s: %s",
                checkpoint.checkpoint_id, ", ".join(mismatched),
            )
            raise RollbackVerificationFailed(
                f"Files not byte-identical after restoring {checkpoint.checkpoint_id}: "
                f"{', '.join(mismatched)}",
                mismatched_paths=mismatched,
            )
        return list(paths)

    def restore(self, checkpoint: Checkpoint) -> list[str]:
        """Rewrite every checkpointed file and verify equality.

        Raises
        ------
        CheckpointReleasedError
            If the checkpoint belongs to a committed batch.
        RollbackVerificationFailed
            If any file is not byte-identical after the restore.
        """
        if checkpoint.released:
            raise CheckpointReleasedError(
                f"Checkpoint {checkpoint.checkpoint_id} was released on commit; "
                f"use restore_subset for committed batches"
            )
        restored = self._restore_paths(checkpoint, checkpoint.paths)
        logger.info("Restored %d file(s) from %s", len(restored), checkpoint.checkpoint_id)
        return restored

    def restore_subset(
        self,
        checkpoint: Checkpoint,
        paths: list[str],
        expected_current: dict[str, str | None] | None = None,
    ) -> list[str]:
        """Restore only *paths*, e.g. for a committed batch.

        When *expected_current* is given (path -> content the file should
        hold right now, None for absent), any path whose working copy
        differs is a conflict and nothing is restored.
        """
        unknown = [p for p in paths if p not in checkpoint.files]
        if unknown:
            raise KeyError(f"Not in {checkpoint.checkpoint_id}: {', '.join(unknown)}")

        if expected_current is not None:
            conflicts = sorted(
                p for p in paths
                if p in expected_current and self._workspace.read(p) != expected_current[p]
            )
            if conflicts:
                raise RollbackConflictError(
                    f"Files changed since {checkpoint.batch_id} committed: {', '.join(conflicts)}",
                    conflicts=conflicts,
                )

        restored = self._restore_paths(checkpoint, sorted(paths))
        logger.info("Partially restored %d file(s) from %s", len(restored), checkpoint.checkpoint_id)
        return restored

    # ------------------------------------------------------------------
    # Rollback points
    # ------------------------------------------------------------------

    def establish_point(
        self,
        scope: RollbackScope,
        unit_id: str,
        checkpoints: list[Checkpoint],
        paths: list[str] | None = None,
    ) -> RollbackPoint:
        if scope == RollbackScope.FILE and not paths:
            raise ValueError("A FILE-scoped rollback point needs paths")
        return RollbackPoint(
            scope=scope, unit_id=unit_id, checkpoints=checkpoints, paths=paths or []
        )

    def paths_of(self, point: RollbackPoint) -> dict[str, list[str]]:
        """checkpoint_id -> paths that *point* covers in that checkpoint."""
        covered: dict[str, list[str]] = {}
        for checkpoint in point.checkpoints:
            paths = checkpoint.paths
            if point.scope == RollbackScope.FILE:
                paths = [p for p in paths if p in point.paths]
            if paths:
                covered[checkpoint.checkpoint_id] = paths
        return covered
