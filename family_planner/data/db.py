"""
Family Event Planner — Event Store.

SQLite-backed persistence for events, their status history, pending
approvals and registration attempts. The lifecycle manager is the only
caller that changes event status; it does so through `update_status`, a
compare-and-swap that appends the history row in the same transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from family_planner.core.errors import PaymentGuardViolation, PersistenceError
from family_planner.core.timeutil import from_iso, to_iso, utcnow
from family_planner.data.models import (
    AttemptOutcome,
    Channel,
    Event,
    EventStatus,
    PendingApproval,
    RegistrationAttempt,
    Resolution,
    StatusChange,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    source              TEXT NOT NULL,
    source_id           TEXT NOT NULL,
    title               TEXT NOT NULL,
    start_at            TEXT NOT NULL,
    end_at              TEXT,
    location            TEXT NOT NULL DEFAULT '',
    cost                REAL,
    age_min             INTEGER,
    age_max             INTEGER,
    registration_url    TEXT NOT NULL DEFAULT '',
    description         TEXT NOT NULL DEFAULT '',
    status              TEXT NOT NULL,
    conflict_summary    TEXT,
    registration_result TEXT,
    filter_reason       TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL,
    UNIQUE (source, source_id)
);

CREATE TABLE IF NOT EXISTS status_history (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    INTEGER NOT NULL REFERENCES events(id),
    from_status TEXT,
    to_status   TEXT NOT NULL,
    reason      TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_approvals (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        INTEGER NOT NULL REFERENCES events(id),
    channel         TEXT NOT NULL,
    destination     TEXT NOT NULL,
    correlation_key TEXT NOT NULL UNIQUE,
    message_id      TEXT,
    created_at      TEXT NOT NULL,
    expires_at      TEXT NOT NULL,
    resolved        INTEGER NOT NULL DEFAULT 0,
    resolution      TEXT,
    resolved_at     TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_approvals_one_open_per_event
    ON pending_approvals (event_id) WHERE resolved = 0;
CREATE INDEX IF NOT EXISTS idx_approvals_message_id
    ON pending_approvals (message_id);
CREATE INDEX IF NOT EXISTS idx_approvals_destination
    ON pending_approvals (destination, created_at);
CREATE INDEX IF NOT EXISTS idx_approvals_open_expiry
    ON pending_approvals (resolved, expires_at);

CREATE TABLE IF NOT EXISTS registration_attempts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id            INTEGER NOT NULL REFERENCES events(id),
    adapter_id          TEXT NOT NULL,
    attempt_number      INTEGER NOT NULL,
    outcome             TEXT NOT NULL,
    evidence            TEXT,
    detail              TEXT NOT NULL DEFAULT '',
    confirmation_number TEXT,
    created_at          TEXT NOT NULL
);
"""


def _utc_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string so stored approval times compare as text."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class EventStore:
    """SQLite-backed storage for the approval-and-registration pipeline."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from family_planner.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction; storage errors become PersistenceError."""
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open event store: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            logger.error("Event store error: %s", exc)
            raise PersistenceError(f"Event store error: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Event store initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            source=row["source"],
            source_id=row["source_id"],
            title=row["title"],
            start=datetime.fromisoformat(row["start_at"]),
            end=from_iso(row["end_at"]),
            location=row["location"],
            cost=row["cost"],
            age_min=row["age_min"],
            age_max=row["age_max"],
            registration_url=row["registration_url"],
            description=row["description"],
            status=EventStatus(row["status"]),
            conflict_summary=json.loads(row["conflict_summary"]) if row["conflict_summary"] else None,
            registration_result=(
                json.loads(row["registration_result"]) if row["registration_result"] else None
            ),
            filter_reason=row["filter_reason"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_approval(row: sqlite3.Row) -> PendingApproval:
        return PendingApproval(
            id=row["id"],
            event_id=row["event_id"],
            channel=Channel(row["channel"]),
            destination=row["destination"],
            correlation_key=row["correlation_key"],
            message_id=row["message_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
            resolved=bool(row["resolved"]),
            resolution=Resolution(row["resolution"]) if row["resolution"] else None,
            resolved_at=from_iso(row["resolved_at"]),
        )

    @staticmethod
    def _row_to_attempt(row: sqlite3.Row) -> RegistrationAttempt:
        return RegistrationAttempt(
            id=row["id"],
            event_id=row["event_id"],
            adapter_id=row["adapter_id"],
            attempt_number=row["attempt_number"],
            outcome=AttemptOutcome(row["outcome"]),
            evidence=row["evidence"],
            detail=row["detail"],
            confirmation_number=row["confirmation_number"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def insert_event(self, event: Event) -> Event:
        """Insert a newly discovered event and record its first history row."""
        now = utcnow().isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO events
                    (source, source_id, title, start_at, end_at, location, cost,
                     age_min, age_max, registration_url, description, status,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.source, event.source_id, event.title,
                    event.start.isoformat(), to_iso(event.end), event.location,
                    event.cost, event.age_min, event.age_max,
                    event.registration_url, event.description,
                    event.status.value, now, now,
                ),
            )
            event.id = cursor.lastrowid
            conn.execute(
                "INSERT INTO status_history (event_id, from_status, to_status, reason, created_at) "
                "VALUES (?, NULL, ?, ?, ?)",
                (event.id, event.status.value, "discovered", now),
            )
        event.created_at = now
        event.updated_at = now
        logger.info("Event #%d stored: %s/%s '%s'", event.id, event.source, event.source_id, event.title)
        return event

    def save_event(self, event: Event) -> None:
        """Persist an event's attributes. Status is changed only via update_status."""
        now = utcnow().isoformat()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE events SET
                    title = ?, start_at = ?, end_at = ?, location = ?, cost = ?,
                    age_min = ?, age_max = ?, registration_url = ?, description = ?,
                    conflict_summary = ?, registration_result = ?, filter_reason = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    event.title, event.start.isoformat(), to_iso(event.end),
                    event.location, event.cost, event.age_min, event.age_max,
                    event.registration_url, event.description,
                    json.dumps(event.conflict_summary) if event.conflict_summary is not None else None,
                    json.dumps(event.registration_result) if event.registration_result is not None else None,
                    event.filter_reason, now, event.id,
                ),
            )
        event.updated_at = now

    def load_event(self, event_id: int) -> Event | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def find_event_by_source(self, source: str, source_id: str) -> Event | None:
        """Dedup lookup by (source, source_id)."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE source = ? AND source_id = ?",
                (source, source_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_event(row)

    def list_events_by_status(self, status: EventStatus) -> list[Event]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events WHERE status = ? ORDER BY start_at", (status.value,)
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def update_status(
        self,
        event_id: int,
        expected: EventStatus,
        new: EventStatus,
        reason: str = "",
    ) -> bool:
        """Compare-and-swap the status and append history. False if status moved underneath."""
        now = utcnow().isoformat()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE events SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new.value, now, event_id, expected.value),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "INSERT INTO status_history (event_id, from_status, to_status, reason, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (event_id, expected.value, new.value, reason, now),
            )
        logger.info("Event #%d: %s -> %s (%s)", event_id, expected.value, new.value, reason or "-")
        return True

    def status_history(self, event_id: int) -> list[StatusChange]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM status_history WHERE event_id = ? ORDER BY id", (event_id,)
            ).fetchall()
        return [
            StatusChange(
                event_id=r["event_id"],
                from_status=r["from_status"],
                to_status=r["to_status"],
                reason=r["reason"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Pending approvals
    # ------------------------------------------------------------------

    def create_pending_approval(
        self,
        event_id: int,
        channel: Channel,
        destination: str,
        correlation_key: str,
        expires_at: datetime,
        created_at: datetime | None = None,
    ) -> PendingApproval | None:
        """Insert an unresolved approval. None if the event already has one open."""
        created_at = created_at or utcnow()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO pending_approvals
                        (event_id, channel, destination, correlation_key, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id, channel.value, destination, correlation_key,
                        _utc_iso(created_at), _utc_iso(expires_at),
                    ),
                )
            except sqlite3.IntegrityError:
                logger.info("Event #%d already has an open approval", event_id)
                return None
            approval_id = cursor.lastrowid
        return PendingApproval(
            id=approval_id,
            event_id=event_id,
            channel=channel,
            destination=destination,
            correlation_key=correlation_key,
            created_at=created_at,
            expires_at=expires_at,
        )

    def set_approval_message_id(self, approval_id: int, message_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE pending_approvals SET message_id = ? WHERE id = ?",
                (message_id, approval_id),
            )

    def discard_pending_approval(self, approval_id: int) -> None:
        """Drop an approval whose message never left (send failed)."""
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM pending_approvals WHERE id = ? AND resolved = 0 AND message_id IS NULL",
                (approval_id,),
            )

    def load_pending_approval(self, approval_id: int) -> PendingApproval | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE id = ?", (approval_id,)
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def find_approval_by_message_id(self, message_id: str) -> PendingApproval | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE message_id = ? ORDER BY id DESC LIMIT 1",
                (message_id,),
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def find_approval_by_correlation_key(self, key: str) -> PendingApproval | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE correlation_key = ?", (key.upper(),)
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def latest_approval_for_destination(
        self, destination: str, unresolved_only: bool = False
    ) -> PendingApproval | None:
        query = "SELECT * FROM pending_approvals WHERE destination = ? "
        if unresolved_only:
            query += "AND resolved = 0 "
        query += "ORDER BY created_at DESC, id DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, (destination,)).fetchone()
        return self._row_to_approval(row) if row else None

    def latest_approval_for_event(self, event_id: int) -> PendingApproval | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE event_id = ? ORDER BY id DESC LIMIT 1",
                (event_id,),
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def unresolved_approval_for_event(self, event_id: int) -> PendingApproval | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_approvals WHERE event_id = ? AND resolved = 0",
                (event_id,),
            ).fetchone()
        return self._row_to_approval(row) if row else None

    def resolve_pending_approval(
        self,
        approval_id: int,
        resolution: Resolution,
        resolved_at: datetime | None = None,
    ) -> bool:
        """Compare-and-swap resolved 0 -> 1. Only the first caller wins."""
        resolved_at = resolved_at or utcnow()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE pending_approvals SET resolved = 1, resolution = ?, resolved_at = ? "
                "WHERE id = ? AND resolved = 0",
                (resolution.value, _utc_iso(resolved_at), approval_id),
            )
        won = cursor.rowcount > 0
        if won:
            logger.info("Approval #%d resolved: %s", approval_id, resolution.value)
        else:
            logger.debug("Approval #%d already resolved; %s ignored", approval_id, resolution.value)
        return won

    def expired_unresolved_approvals(self, now: datetime | None = None) -> list[PendingApproval]:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_approvals WHERE resolved = 0 AND expires_at <= ? ORDER BY id",
                (_utc_iso(now),),
            ).fetchall()
        return [self._row_to_approval(r) for r in rows]

    # ------------------------------------------------------------------
    # Registration attempts
    # ------------------------------------------------------------------

    def append_registration_attempt(self, attempt: RegistrationAttempt) -> RegistrationAttempt:
        """Append an attempt. Refused once the event has a payment_blocked attempt."""
        now = utcnow().isoformat()
        with self._connect() as conn:
            blocked = conn.execute(
                "SELECT 1 FROM registration_attempts WHERE event_id = ? AND outcome = ?",
                (attempt.event_id, AttemptOutcome.PAYMENT_BLOCKED.value),
            ).fetchone()
            if blocked is not None:
                raise PaymentGuardViolation(
                    f"Event {attempt.event_id} is payment-blocked; no further attempts allowed"
                )
            cursor = conn.execute(
                """
                INSERT INTO registration_attempts
                    (event_id, adapter_id, attempt_number, outcome, evidence,
                     detail, confirmation_number, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.event_id, attempt.adapter_id, attempt.attempt_number,
                    attempt.outcome.value, attempt.evidence, attempt.detail,
                    attempt.confirmation_number, now,
                ),
            )
            attempt.id = cursor.lastrowid
        attempt.created_at = now
        logger.info(
            "Event #%d attempt %d via %s: %s",
            attempt.event_id, attempt.attempt_number, attempt.adapter_id, attempt.outcome.value,
        )
        return attempt

    def list_registration_attempts(self, event_id: int) -> list[RegistrationAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM registration_attempts WHERE event_id = ? ORDER BY id",
                (event_id,),
            ).fetchall()
        return [self._row_to_attempt(r) for r in rows]
