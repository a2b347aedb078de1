"""Append-only, hash-chained Run Ledger backed by SQLite.

The Run Ledger is the source of truth for every plan.  The Progress
Tracker is a projection of this ledger; live batch and wave status is
always re-derived from it.

Design:
- Append-only: only `append()` writes; no update, no delete.
- Hash-chained per plan: each entry includes SHA-256 of the previous one.
- WAL journal mode for concurrent readers.
- entry_hash UNIQUE constraint for tamper detection.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from wavegate.core.hasher import compute_entry_hash
from wavegate.models.ledger import LedgerEntry, UnitKind


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    plan_id               TEXT NOT NULL,
    unit_id               TEXT NOT NULL,
    unit_kind             TEXT NOT NULL,
    state_transition      TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    reason                TEXT NOT NULL DEFAULT '',
    link                  TEXT NOT NULL DEFAULT '',
    artifact_refs_json    TEXT NOT NULL DEFAULT '[]',
    details_json          TEXT NOT NULL DEFAULT '{}',
    engine_version        TEXT NOT NULL,
    schema_version        TEXT NOT NULL,
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_PLAN = """
CREATE INDEX IF NOT EXISTS idx_plan_id ON run_ledger(plan_id, id);
"""

_CREATE_IDX_PLAN_UNIT = """
CREATE INDEX IF NOT EXISTS idx_plan_unit ON run_ledger(plan_id, unit_id, id);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RunLedger:
    """Append-only, hash-chained Run Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serialises read-latest-hash + insert so concurrent batches
        # cannot fork the chain.
        self._write_lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_PLAN)
            conn.execute(_CREATE_IDX_PLAN_UNIT)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry to the ledger, computing hash chain links.

        Returns the entry with `previous_entry_hash` and `entry_hash` set.
        This is the ONLY write method. There is no update or delete.
        """
        with self._write_lock:
            previous_hash = self._get_latest_hash(entry.plan_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO run_ledger
                    (entry_id, plan_id, unit_id, unit_kind, state_transition,
                     timestamp_utc, reason, link, artifact_refs_json,
                     details_json, engine_version, schema_version,
                     previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.plan_id,
                    entry.unit_id,
                    entry.unit_kind.value,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    entry.reason,
                    entry.link,
                    json.dumps(entry.artifact_references),
                    json.dumps(entry.details, sort_keys=True),
                    entry.engine_version,
                    entry.schema_version,
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, plan_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM run_ledger WHERE plan_id = ? ORDER BY id DESC LIMIT 1",
                (plan_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_latest(self, plan_id: str) -> LedgerEntry | None:
        """Return the most recent ledger entry for a plan, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM run_ledger WHERE plan_id = ? ORDER BY id DESC LIMIT 1",
                (plan_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_unit_history(self, plan_id: str, unit_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for one unit of a plan, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE plan_id = ? AND unit_id = ? ORDER BY id ASC",
                (plan_id, unit_id),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_plan_entries(self, plan_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a plan, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE plan_id = ? ORDER BY id ASC",
                (plan_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_plan_ids(self) -> list[str]:
        """Return all distinct plan_ids, most recently active first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT plan_id, MAX(id) AS last FROM run_ledger "
                "GROUP BY plan_id ORDER BY last DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def latest_states(self, plan_id: str, unit_kind: UnitKind) -> dict[str, str]:
        """Map every unit of *unit_kind* in a plan to its latest state."""
        states: dict[str, str] = {}
        for entry in self.get_plan_entries(plan_id):
            if entry.unit_kind == unit_kind:
                states[entry.unit_id] = entry.to_state
        return states

    def has_plan(self, plan_id: str) -> bool:
        return self.get_latest(plan_id) is not None

    def plan_reference(self, plan_id: str) -> str | None:
        """Content address of the stored plan, linked from its first entry."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT link FROM run_ledger "
                "WHERE plan_id = ? AND unit_kind = ? AND link != '' "
                "ORDER BY id ASC LIMIT 1",
                (plan_id, UnitKind.PLAN.value),
            ).fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, plan_id: str) -> bool:
        """Verify the hash chain integrity for a plan.

        Walks all entries in order, recomputes each entry_hash, and
        verifies that previous_entry_hash links match.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_plan_entries(plan_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        """Convert a SQLite row tuple to a LedgerEntry."""
        (
            _id,
            entry_id,
            plan_id,
            unit_id,
            unit_kind,
            state_transition,
            timestamp_utc,
            reason,
            link,
            artifact_refs_json,
            details_json,
            engine_version,
            schema_version,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            plan_id=plan_id,
            unit_id=unit_id,
            unit_kind=UnitKind(unit_kind),
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            reason=reason,
            link=link,
            artifact_references=json.loads(artifact_refs_json),
            details=json.loads(details_json),
            engine_version=engine_version,
            schema_version=schema_version,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
