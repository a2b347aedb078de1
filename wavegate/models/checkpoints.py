"""Checkpoint and rollback models (owned by the Rollback Manager)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Checkpoint(BaseModel):
    """Restorable snapshot of exactly the files a batch touches.

    ``files`` maps each path to the content address of its pre-batch
    bytes, or ``None`` when the file did not exist.  ``snapshot_ref`` is
    the version-control ref that rewrites them.  A released checkpoint
    belongs to a committed batch and only supports partial restores.
    """

    model_config = ConfigDict(frozen=True)

    checkpoint_id: str = Field(default_factory=lambda: f"cp-{uuid.uuid4().hex[:12]}")
    batch_id: str
    snapshot_ref: str = ""
    files: dict[str, str | None] = {}
    released: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def paths(self) -> list[str]:
        return sorted(self.files)


class RollbackScope(str, Enum):
    FILE = "file"
    BATCH = "batch"
    WAVE = "wave"


class RollbackPoint(BaseModel):
    """A rollback boundary grouping one or more checkpoints."""

    model_config = ConfigDict(frozen=True)

    point_id: str = Field(default_factory=lambda: f"rp-{uuid.uuid4().hex[:12]}")
    scope: RollbackScope
    unit_id: str
    checkpoints: list[Checkpoint] = []
    paths: list[str] = []  # restricts a FILE-scoped point
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class RollbackResult(BaseModel):
    """Outcome of an operator-requested rollback."""

    model_config = ConfigDict(frozen=True)

    scope: RollbackScope
    unit_id: str
    success: bool
    restored_paths: list[str] = []
    rolled_back_batches: list[str] = []
    conflicts: list[str] = []
    message: str = ""
