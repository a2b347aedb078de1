"""Approval Gate: persisted human decisions for gated units.

An approval is a suspension, not a blocked thread: the request lives in
SQLite, the Orchestrator returns, and the decision (or the deadline)
later resumes the unit, possibly in a different process.

Rules:
- Exactly one PENDING request per unit; a second request is rejected.
- Expiry is rejection unless the configured policy says otherwise.
- Under ``ExpiryPolicy.APPROVE`` an expired request is recorded as
  APPROVED by ``system:expiry``, so commit still requires APPROVED.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from wavegate.models.approvals import ApprovalRequest, ApprovalStatus, ExpiryPolicy
from wavegate.models.notifications import NotificationKind
from wavegate.models.risk import RiskScore
from wavegate.routing.dispatcher import NotificationDispatcher, NotificationDispatchError

logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:expiry"

_CREATE_APPROVALS = """
CREATE TABLE IF NOT EXISTS approval_requests (
    request_id    TEXT PRIMARY KEY,
    unit_id       TEXT NOT NULL,
    plan_id       TEXT NOT NULL,
    status        TEXT NOT NULL,
    deadline      TEXT NOT NULL,
    payload_json  TEXT NOT NULL
);
"""

# Partial unique index: one pending request per unit.
_CREATE_IDX_PENDING = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_one_pending_per_unit
    ON approval_requests(unit_id) WHERE status = 'pending';
"""


class DuplicateApprovalError(RuntimeError):
    """Raised when a unit already has an outstanding request."""


class ApprovalNotFoundError(KeyError):
    """Raised for an unknown request_id."""


class ApprovalClosedError(RuntimeError):
    """Raised when deciding a request that is no longer pending."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalGate:
    """Creates, persists, decides and expires approval requests.

    Parameters
    ----------
    db_path:
        SQLite file holding the requests (the ledger file by default).
    dispatcher:
        Where approvers are notified.  ``None`` disables notification.
    timeout:
        Time between request and deadline.
    expiry_policy:
        What an elapsed deadline means.  ``REJECT`` unless configured.
    audience:
        Audience name passed to the notification channel.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db_path: Path,
        dispatcher: NotificationDispatcher | None = None,
        *,
        timeout: timedelta = timedelta(hours=24),
        expiry_policy: ExpiryPolicy = ExpiryPolicy.REJECT,
        audience: str = "approvers",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._dispatcher = dispatcher
        self._timeout = timeout
        self._expiry_policy = expiry_policy
        self._audience = audience
        self._clock = clock
        with self._connect() as conn:
            conn.execute(_CREATE_APPROVALS)
            conn.execute(_CREATE_IDX_PENDING)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @property
    def expiry_policy(self) -> ExpiryPolicy:
        return self._expiry_policy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request(
        self,
        unit_id: str,
        risk_score: RiskScore,
        *,
        plan_id: str = "",
        description: str = "",
        link: str = "",
    ) -> ApprovalRequest:
        """Open a request for *unit_id* and notify approvers.

        Raises
        ------
        DuplicateApprovalError
            If the unit already has a PENDING request.
        """
        existing = self.get_pending_for_unit(unit_id)
        if existing is not None:
            raise DuplicateApprovalError(
                f"Unit {unit_id} already has pending request {existing.request_id}"
            )

        requested_at = self._clock()
        req = ApprovalRequest(
            unit_id=unit_id,
            plan_id=plan_id,
            risk_score=risk_score,
            description=description,
            link=link,
            requested_at=requested_at,
            deadline=requested_at + self._timeout,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO approval_requests "
                    "(request_id, unit_id, plan_id, status, deadline, payload_json) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        req.request_id,
                        req.unit_id,
                        req.plan_id,
                        req.status.value,
                        req.deadline.isoformat(),
                        req.model_dump_json(),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateApprovalError(
                f"Unit {unit_id} already has a pending request"
            ) from exc

        logger.info(
            "Approval %s requested for %s (risk %s %.1f, deadline %s)",
            req.request_id, unit_id, risk_score.level.value, risk_score.value,
            req.deadline.isoformat(),
        )
        self._notify(
            req,
            f"Approval needed for {unit_id} (risk {risk_score.level.value}, "
            f"{risk_score.value:g}) by {req.deadline.isoformat()}: {description}. "
            f"Decide with: wavegate approve {req.request_id}",
            NotificationKind.APPROVAL_REQUESTED,
        )
        return req

    # ------------------------------------------------------------------
    # Decide / expire
    # ------------------------------------------------------------------

    def decide(self, request_id: str, approve: bool, actor: str) -> ApprovalRequest:
        """Record a human decision.

        A decision arriving after the deadline is refused: the request is
        expired instead and ``ApprovalClosedError`` is raised.
        """
        req = self.get(request_id)
        if not req.is_pending:
            raise ApprovalClosedError(
                f"Request {request_id} is already {req.status.value}"
            )
        if req.is_past_deadline(self._clock()):
            self._expire(req)
            raise ApprovalClosedError(
                f"Request {request_id} passed its deadline {req.deadline.isoformat()}"
            )

        status = ApprovalStatus.APPROVED if approve else ApprovalStatus.REJECTED
        decided = self._save_decision(req, status, actor)
        logger.info("Approval %s %s by %s", request_id, status.value, actor)
        self._notify(
            decided,
            f"{decided.unit_id} was {status.value} by {actor}",
            NotificationKind.APPROVAL_DECIDED,
        )
        return decided

    def poll(self, request_id: str) -> ApprovalRequest:
        """Return the request, expiring it first if its deadline passed."""
        req = self.get(request_id)
        if req.is_pending and req.is_past_deadline(self._clock()):
            return self._expire(req)
        return req

    def poll_all(self, plan_id: str | None = None) -> list[ApprovalRequest]:
        """Expire every overdue request; returns the ones that changed."""
        now = self._clock()
        return [
            self._expire(req)
            for req in self.pending_requests(plan_id)
            if req.is_past_deadline(now)
        ]

    def _expire(self, req: ApprovalRequest) -> ApprovalRequest:
        if self._expiry_policy == ExpiryPolicy.APPROVE:
            status = ApprovalStatus.APPROVED
            logger.warning(
                "Approval %s for %s expired and was auto-approved by policy",
                req.request_id, req.unit_id,
            )
        else:
            status = ApprovalStatus.EXPIRED
            logger.warning("Approval %s for %s expired", req.request_id, req.unit_id)
        expired = self._save_decision(req, status, EXPIRY_ACTOR)
        self._notify(
            expired,
            f"Approval for {req.unit_id} expired at {req.deadline.isoformat()} "
            f"({status.value})",
            NotificationKind.APPROVAL_DECIDED,
        )
        return expired

    def _save_decision(
        self, req: ApprovalRequest, status: ApprovalStatus, actor: str
    ) -> ApprovalRequest:
        decided = req.model_copy(
            update={"status": status, "decided_at": self._clock(), "decided_by": actor}
        )
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE approval_requests SET status = ?, payload_json = ? "
                "WHERE request_id = ? AND status = 'pending'",
                (status.value, decided.model_dump_json(), req.request_id),
            )
            conn.commit()
        if cur.rowcount != 1:
            raise ApprovalClosedError(f"Request {req.request_id} was decided concurrently")
        return decided

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ApprovalRequest:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM approval_requests WHERE request_id = ?",
                (request_id,),
            ).fetchone()
        if row is None:
            raise ApprovalNotFoundError(request_id)
        return ApprovalRequest.model_validate_json(row[0])

    def get_pending_for_unit(self, unit_id: str) -> ApprovalRequest | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM approval_requests "
                "WHERE unit_id = ? AND status = 'pending'",
                (unit_id,),
            ).fetchone()
        return ApprovalRequest.model_validate_json(row[0]) if row else None

    def latest_for_unit(self, unit_id: str) -> ApprovalRequest | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM approval_requests "
                "WHERE unit_id = ? ORDER BY rowid DESC LIMIT 1",
                (unit_id,),
            ).fetchone()
        return ApprovalRequest.model_validate_json(row[0]) if row else None

    def pending_requests(self, plan_id: str | None = None) -> list[ApprovalRequest]:
        query = "SELECT payload_json FROM approval_requests WHERE status = 'pending'"
        params: tuple = ()
        if plan_id is not None:
            query += " AND plan_id = ?"
            params = (plan_id,)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY rowid ASC", params).fetchall()
        return [ApprovalRequest.model_validate_json(r[0]) for r in rows]

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _notify(self, req: ApprovalRequest, message: str, kind: NotificationKind) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher.notify(
                self._audience, message, req.link, kind=kind, plan_id=req.plan_id
            )
        except NotificationDispatchError:
            # The request stays pending; its deadline still resolves it.
            logger.exception("Could not notify %s about %s", self._audience, req.request_id)
