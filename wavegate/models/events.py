"""Progress events streamed from the Orchestrator to subscribers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from wavegate.models.ledger import UnitKind


class EventKind(str, Enum):
    PLAN_CREATED = "plan_created"
    TRANSITION = "transition"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    SHIM_INSTALLED = "shim_installed"
    SHIM_REMOVED = "shim_removed"
    ROLLOUT = "rollout"
    ESCALATION = "escalation"


class ProgressEvent(BaseModel):
    """One event on the progress stream.

    Events mirror ledger entries; subscribers must not treat them as the
    source of truth.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: EventKind
    plan_id: str
    unit_id: str = ""
    unit_kind: UnitKind = UnitKind.PLAN
    from_state: str = ""
    to_state: str = ""
    reason: str = ""
    payload: dict[str, Any] = {}
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
