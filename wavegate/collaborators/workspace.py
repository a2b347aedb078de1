"""Filesystem workspace rooted at one directory."""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspacePathError(ValueError):
    """Raised when a path escapes the workspace root."""


class UndecodableFileError(ValueError):
    """Raised when a workspace file is not UTF-8 text."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path} is not UTF-8 text ({reason})")
        self.path = path


class LocalWorkspace:
    """Reads and writes UTF-8 text files under *root*.

    Writes go through a temporary sibling and ``os.replace`` so a file is
    never observed half-written.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def identity(self) -> str:
        return str(self._root)

    def resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if target != self._root and self._root not in target.parents:
            raise WorkspacePathError(f"{path!r} escapes workspace {self._root}")
        return target

    def read(self, path: str) -> str | None:
        target = self.resolve(path)
        if not target.is_file():
            return None
        # newline="" keeps line endings byte-exact
        try:
            with open(target, encoding="utf-8", newline="") as fh:
                return fh.read()
        except UnicodeDecodeError as exc:
            raise UndecodableFileError(path, exc.reason) from exc

    def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.wavegate-tmp")
        with open(tmp, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
        os.replace(tmp, target)
        logger.debug("Wrote %s (%d chars)", path, len(content))

    def delete(self, path: str) -> None:
        self.resolve(path).unlink(missing_ok=True)
        logger.debug("Deleted %s", path)

    def exists(self, path: str) -> bool:
        return self.resolve(path).is_file()
