"""Local version control backed by the content-addressed store.

Snapshots and commits are canonical-JSON manifests stored as blobs;
branch heads live in a small JSON refs file.  Content is shared with the
checkpoint snapshots, so identical file versions are stored once.
"""

from __future__ import annotations

import difflib
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from wavegate.collaborators.protocols import Workspace
from wavegate.core.snapshot_store import ContentAddressedStore

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"


class UnknownRefError(KeyError):
    """Raised when a ref does not name a stored snapshot or commit."""


class LocalVersionControl:
    """Snapshot/restore/commit over a ``Workspace``.

    Parameters
    ----------
    workspace:
        The working copy.
    store:
        Blob store for file content and manifests.
    refs_path:
        JSON file holding ``{branch: head_commit_id}``.
    """

    def __init__(
        self, workspace: Workspace, store: ContentAddressedStore, refs_path: Path
    ) -> None:
        self._workspace = workspace
        self._store = store
        self._refs_path = Path(refs_path)
        self._refs_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _capture(self, paths: list[str]) -> dict[str, str | None]:
        files: dict[str, str | None] = {}
        for path in paths:
            content = self._workspace.read(path)
            files[path] = None if content is None else self._store.store_text(content)
        return files

    def snapshot(self, paths: list[str]) -> str:
        return self._store.store_json({"kind": "snapshot", "files": self._capture(sorted(paths))})

    def manifest(self, ref: str) -> dict[str, str | None]:
        """Map of path -> content address (None = absent) recorded in *ref*."""
        if not self._store.exists(ref):
            raise UnknownRefError(ref)
        return json.loads(self._store.retrieve(ref))["files"]

    def restore(self, ref: str, paths: list[str] | None = None) -> None:
        files = self.manifest(ref)
        for path in paths if paths is not None else sorted(files):
            if path not in files:
                raise UnknownRefError(f"{path} is not part of {ref}")
            address = files[path]
            if address is None:
                self._workspace.delete(path)
            else:
                self._workspace.write(path, self._store.retrieve_text(address))
        logger.debug("Restored %s from %s", paths or "all files", ref)

    def diff(self, ref: str, paths: list[str] | None = None) -> str:
        files = self.manifest(ref)
        chunks: list[str] = []
        for path in paths if paths is not None else sorted(files):
            address = files.get(path)
            before = "" if address is None else self._store.retrieve_text(address)
            after = self._workspace.read(path) or ""
            chunks.extend(
                difflib.unified_diff(
                    before.splitlines(keepends=True),
                    after.splitlines(keepends=True),
                    fromfile=f"a/{path}",
                    tofile=f"b/{path}",
                )
            )
        return "".join(chunks)

    # ------------------------------------------------------------------
    # Branches and commits
    # ------------------------------------------------------------------

    def _load_refs(self) -> dict[str, str | None]:
        if not self._refs_path.exists():
            return {}
        return json.loads(self._refs_path.read_text(encoding="utf-8"))

    def _save_refs(self, refs: dict[str, str | None]) -> None:
        tmp = self._refs_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(refs, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(self._refs_path)

    def create_branch(self, name: str) -> str:
        with self._lock:
            refs = self._load_refs()
            if name not in refs:
                refs[name] = refs.get(DEFAULT_BRANCH)
                self._save_refs(refs)
                logger.info("Created branch %s", name)
        return name

    def head(self, branch: str) -> str | None:
        return self._load_refs().get(branch)

    def commit(self, branch: str, files: list[str], message: str) -> str:
        with self._lock:
            refs = self._load_refs()
            commit_id = self._store.store_json(
                {
                    "kind": "commit",
                    "branch": branch,
                    "parent": refs.get(branch),
                    "files": self._capture(sorted(files)),
                    "message": message,
                    "committed_at": datetime.now(timezone.utc).isoformat(),
                }
            )
            refs[branch] = commit_id
            self._save_refs(refs)
        logger.info("Committed %d file(s) to %s as %s", len(files), branch, commit_id[:19])
        return commit_id

    def log(self, branch: str) -> list[dict]:
        """Commits on *branch*, newest first."""
        history: list[dict] = []
        commit_id = self.head(branch)
        while commit_id:
            record = json.loads(self._store.retrieve(commit_id))
            history.append({"commit_id": commit_id, **record})
            commit_id = record.get("parent")
        return history
