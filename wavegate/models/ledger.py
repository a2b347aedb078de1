"""Canonical Run Ledger entry model (append-only, hash-chained).

The Run Ledger is the source of truth for every plan.  It is:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous via SHA-256)
- Event-driven (one entry per state transition)
- Unit-aware (entries are scoped to plan_id + unit_id)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UnitKind(str, Enum):
    """What a ledger entry's ``unit_id`` refers to."""

    PLAN = "plan"
    WAVE = "wave"
    BATCH = "batch"
    CHECKPOINT = "checkpoint"
    APPROVAL = "approval"
    SHIM = "shim"


class LedgerEntry(BaseModel):
    """A single entry in the append-only Run Ledger.

    The Progress Tracker is a projection of these entries.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    plan_id: str
    unit_id: str
    unit_kind: UnitKind
    state_transition: str  # "from_state->to_state", e.g. "pending->checkpointed"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    reason: str = ""
    link: str = ""  # content address of the diff / test output / report
    artifact_references: list[str] = []
    details: dict[str, Any] = {}
    engine_version: str = "0.3.0"
    schema_version: str = "2026-10"
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed after construction, seals this entry

    @property
    def from_state(self) -> str:
        return self.state_transition.split("->", 1)[0]

    @property
    def to_state(self) -> str:
        return self.state_transition.split("->", 1)[-1]
