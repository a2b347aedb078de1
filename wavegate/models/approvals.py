"""Approval request models: structured human decisions, never informal flags."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from wavegate.models.risk import RiskScore


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ExpiryPolicy(str, Enum):
    """What an expired request means.  REJECT is the default."""

    REJECT = "reject"
    APPROVE = "approve"


class ApprovalRequest(BaseModel):
    """A request for a human decision on a gated batch or wave.

    Exactly one PENDING request may exist per gated unit.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: f"ar-{uuid.uuid4().hex[:12]}")
    unit_id: str  # batch_id or wave_id
    plan_id: str = ""
    risk_score: RiskScore
    description: str = ""
    link: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    deadline: datetime
    decided_at: datetime | None = None
    decided_by: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def is_past_deadline(self, now: datetime) -> bool:
        return now >= self.deadline

    @property
    def grants_commit(self) -> bool:
        return self.status == ApprovalStatus.APPROVED
