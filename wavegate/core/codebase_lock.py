"""Per-codebase single-writer lease.

One ``CodebaseLease`` exists per codebase identity in a process.  It
carries two things:

- the exclusive "active batch" lock, held from ``applying`` through
  ``testing``;
- file claims, held by batches that are suspended in
  ``awaiting_approval`` so no other batch rewrites their files before
  the decision.

Independent codebases get independent leases and proceed concurrently.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class LockUnavailableError(RuntimeError):
    """Raised when the lease or a file claim cannot be obtained."""


class CodebaseLease:
    """Exclusive writer lock plus per-file claims for one codebase."""

    def __init__(self, codebase_id: str) -> None:
        self.codebase_id = codebase_id
        self._writer = threading.Lock()
        self._guard = threading.Lock()
        self._holder: str | None = None
        self._claims: dict[str, str] = {}

    @property
    def holder(self) -> str | None:
        return self._holder

    # ------------------------------------------------------------------
    # Writer lock
    # ------------------------------------------------------------------

    def acquire(self, holder: str, timeout: float = 30.0) -> None:
        if not self._writer.acquire(timeout=timeout):
            raise LockUnavailableError(
                f"Codebase {self.codebase_id} is held by {self._holder}; "
                f"{holder} gave up after {timeout:g}s"
            )
        self._holder = holder
        logger.debug("Lease on %s acquired by %s", self.codebase_id, holder)

    def release(self, holder: str) -> None:
        if self._holder != holder:
            raise LockUnavailableError(
                f"{holder} cannot release {self.codebase_id}: held by {self._holder}"
            )
        self._holder = None
        self._writer.release()
        logger.debug("Lease on %s released by %s", self.codebase_id, holder)

    @contextmanager
    def hold(self, holder: str, timeout: float = 30.0) -> Iterator[None]:
        self.acquire(holder, timeout)
        try:
            yield
        finally:
            self.release(holder)

    # ------------------------------------------------------------------
    # File claims
    # ------------------------------------------------------------------

    def claim(self, holder: str, paths: list[str]) -> None:
        """Claim *paths* for *holder*; all-or-nothing."""
        with self._guard:
            conflicts = sorted(
                p for p in paths if self._claims.get(p, holder) != holder
            )
            if conflicts:
                raise LockUnavailableError(
                    f"{holder} cannot claim {', '.join(conflicts)}: "
                    f"held by {self._claims[conflicts[0]]}"
                )
            for path in paths:
                self._claims[path] = holder

    def release_claims(self, holder: str) -> None:
        with self._guard:
            for path in [p for p, h in self._claims.items() if h == holder]:
                del self._claims[path]

    def conflicting_claims(self, holder: str, paths: list[str]) -> list[str]:
        """Paths among *paths* claimed by someone other than *holder*."""
        with self._guard:
            return sorted(p for p in paths if self._claims.get(p, holder) != holder)


class CodebaseLockRegistry:
    """Hands out one ``CodebaseLease`` per codebase identity."""

    _default: CodebaseLockRegistry | None = None

    def __init__(self) -> None:
        self._leases: dict[str, CodebaseLease] = {}
        self._guard = threading.Lock()

    @classmethod
    def default(cls) -> CodebaseLockRegistry:
        """Process-wide registry shared by all orchestrators."""
        if cls._default is None:
            cls._default = cls()
        return cls._default

    def lease_for(self, codebase_id: str) -> CodebaseLease:
        with self._guard:
            if codebase_id not in self._leases:
                self._leases[codebase_id] = CodebaseLease(codebase_id)
            return self._leases[codebase_id]
