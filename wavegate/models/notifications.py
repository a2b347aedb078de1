"""Notification model: what the routing layer delivers to sinks."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class NotificationKind(str, Enum):
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_DECIDED = "approval_decided"
    WAVE_PAUSED = "wave_paused"
    PLAN_FINISHED = "plan_finished"
    ESCALATION = "escalation"
    INFO = "info"


class Notification(BaseModel):
    """One message for an audience, with a link to the relevant detail."""

    model_config = ConfigDict(frozen=True)

    notification_id: str = Field(default_factory=lambda: f"nt-{uuid.uuid4().hex[:12]}")
    audience: str
    message: str
    link: str = ""
    kind: NotificationKind = NotificationKind.INFO
    plan_id: str = ""
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
