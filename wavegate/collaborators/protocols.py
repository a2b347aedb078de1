"""Collaborator contracts consumed by the engine.

The engine only ever talks to these Protocols; any object with the right
methods plugs in.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from wavegate.models.verification import StructuralRepresentation, TestRunResult


@runtime_checkable
class Workspace(Protocol):
    """The working copy of the codebase being transformed.

    Paths are relative, POSIX-style.  ``read`` returns None for an
    absent file.
    """

    @property
    def identity(self) -> str:
        """Stable codebase identity, used to key the single-writer lease."""
        ...

    def read(self, path: str) -> str | None: ...

    def write(self, path: str, content: str) -> None: ...

    def delete(self, path: str) -> None: ...

    def exists(self, path: str) -> bool: ...


@runtime_checkable
class VersionControl(Protocol):
    """Snapshot, restore, commit and branch operations."""

    def snapshot(self, paths: list[str]) -> str:
        """Capture *paths* and return an opaque ref."""
        ...

    def restore(self, ref: str, paths: list[str] | None = None) -> None:
        """Rewrite files from *ref*; only *paths* when given."""
        ...

    def commit(self, branch: str, files: list[str], message: str) -> str:
        """Record the current content of *files* on *branch*; returns a commit id."""
        ...

    def create_branch(self, name: str) -> str: ...

    def diff(self, ref: str, paths: list[str] | None = None) -> str:
        """Unified diff between *ref* and the working copy."""
        ...


@runtime_checkable
class TestRunner(Protocol):
    """Runs tests for a set of changed paths."""

    __test__ = False

    def run_tests(
        self, affected_paths: list[str], full_suite: bool, timeout: float
    ) -> TestRunResult: ...


@runtime_checkable
class Parser(Protocol):
    """Builds structural representations of source text."""

    def parse(self, content: str, language: str) -> StructuralRepresentation: ...


@runtime_checkable
class FeatureFlagService(Protocol):
    def set_rollout_percentage(self, key: str, percent: int) -> None: ...
