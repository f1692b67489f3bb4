"""
Family Event Planner — Calendar Conflict Checker.

Checks a proposed event window against every configured calendar account
and folds the answers into one verdict. Accounts have a role: conflicts on
a "blocking" account stop the proposal, conflicts on a "warning" account are
only shown to the human. A calendar that cannot be reached never fails the
check; it is reported as inaccessible.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from family_planner.core.timeutil import ensure_aware, parse_datetime
from family_planner.data.models import CalendarEntry, ConflictVerdict

if TYPE_CHECKING:
    from family_planner.config import CalendarAccount
    from family_planner.ports.calendar_port import CalendarPort

logger = logging.getLogger(__name__)


def overlaps(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open interval overlap: [start_a, end_a) vs [start_b, end_b)."""
    return start_a < end_b and end_a > start_b


def parse_entry(raw: dict, account_id: str, tz_name: str) -> CalendarEntry | None:
    """Normalize a CalendarPort dict into a CalendarEntry; None if unparseable.

    All-day entries span local midnight to local midnight of their end date
    (exclusive, as Google and iCalendar report it), so they cover whole days.
    """
    raw_start = raw.get("start") or ""
    if not raw_start:
        return None
    try:
        start, start_is_date = parse_datetime(raw_start, tz_name)
        raw_end = raw.get("end") or ""
        end = parse_datetime(raw_end, tz_name)[0] if raw_end else None
    except ValueError:
        logger.warning("Skipping calendar entry with bad times on %s: %r", account_id, raw)
        return None

    all_day = bool(raw.get("all_day")) or start_is_date
    if all_day:
        start = datetime.combine(start.date(), time.min, tzinfo=ZoneInfo(tz_name))
        if end is None or end <= start:
            end = start + timedelta(days=1)
        elif end.time() != time.min:
            end = datetime.combine(end.date() + timedelta(days=1), time.min, tzinfo=ZoneInfo(tz_name))
    elif end is None or end <= start:
        end = start

    return CalendarEntry(
        id=str(raw.get("id", "")),
        title=raw.get("title") or "(no title)",
        start=start,
        end=end,
        all_day=all_day,
        account_id=account_id,
    )


def find_conflicts(
    entries: list[CalendarEntry],
    event_start: datetime,
    event_end: datetime,
    buffer_minutes: int,
) -> list[CalendarEntry]:
    """Return entries overlapping the buffered window; all-day entries block their whole day."""
    buffer = timedelta(minutes=buffer_minutes)
    window_start = event_start - buffer
    window_end = event_end + buffer

    conflicting = []
    for entry in entries:
        if entry.all_day:
            hit = overlaps(entry.start, entry.end, event_start, event_end)
        else:
            hit = overlaps(entry.start, entry.end, window_start, window_end)
        if hit:
            conflicting.append(entry)
    return conflicting


class CalendarConflictChecker:
    """Queries all calendar accounts in parallel and builds a ConflictVerdict."""

    def __init__(
        self,
        accounts: list[CalendarAccount],
        calendars: dict[str, CalendarPort],
        buffer_minutes: int = 30,
        timeout_seconds: float = 10.0,
        default_duration_minutes: int = 120,
        tz_name: str = "America/Los_Angeles",
    ) -> None:
        self._accounts = list(accounts)
        self._calendars = calendars
        self._buffer_minutes = buffer_minutes
        self._timeout = timeout_seconds
        self._default_duration = timedelta(minutes=default_duration_minutes)
        self._tz_name = tz_name

    async def _query_account(
        self, account: CalendarAccount, day_start: datetime, day_end: datetime
    ) -> list[CalendarEntry]:
        calendar = self._calendars.get(account.account_id)
        if calendar is None:
            raise LookupError(f"No calendar adapter for account {account.account_id!r}")

        raw_events = await asyncio.wait_for(
            calendar.list_events(account.account_id, day_start, day_end),
            timeout=self._timeout,
        )
        entries = []
        for raw in raw_events:
            entry = parse_entry(raw, account.account_id, self._tz_name)
            if entry is not None:
                entries.append(entry)
        return entries

    def _query_window(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        """Whole local days around the buffered event, so all-day entries come back too."""
        tz = ZoneInfo(self._tz_name)
        buffer = timedelta(minutes=self._buffer_minutes)
        first: date = (start - buffer).astimezone(tz).date()
        last: date = (end + buffer).astimezone(tz).date()
        return (
            datetime.combine(first, time.min, tzinfo=tz),
            datetime.combine(last + timedelta(days=1), time.min, tzinfo=tz),
        )

    async def check(
        self,
        event_start: datetime,
        event_end: datetime | None = None,
        buffer_minutes: int | None = None,
    ) -> ConflictVerdict:
        """Check an event window against every configured account.

        Args:
            event_start: Event start (naive values are read in the local timezone).
            event_end: Event end; defaults to start + the default duration.
            buffer_minutes: Travel/transition buffer on both sides.
        """
        start = ensure_aware(event_start, self._tz_name)
        end = ensure_aware(event_end, self._tz_name) if event_end else start + self._default_duration
        buffer = self._buffer_minutes if buffer_minutes is None else buffer_minutes

        verdict = ConflictVerdict()
        if not self._accounts:
            verdict.system_warnings.append("No calendar accounts configured; conflicts not checked")
            return verdict

        day_start, day_end = self._query_window(start, end)
        results = await asyncio.gather(
            *(self._query_account(a, day_start, day_end) for a in self._accounts),
            return_exceptions=True,
        )

        for account, result in zip(self._accounts, results):
            if isinstance(result, BaseException):
                reason = "timed out" if isinstance(result, asyncio.TimeoutError) else str(result)
                logger.warning("Calendar %s inaccessible: %s", account.account_id, reason)
                verdict.accessible[account.account_id] = False
                continue

            verdict.accessible[account.account_id] = True
            conflicting = find_conflicts(result, start, end, buffer)
            if not conflicting:
                continue

            verdict.conflicts[account.account_id] = conflicting
            if account.role == "blocking":
                verdict.blocking = True
            else:
                verdict.warning = True

        if verdict.no_verdict:
            verdict.system_warnings.append(
                "No calendar could be checked; the event was not verified against any calendar"
            )
        else:
            for account_id, ok in verdict.accessible.items():
                if not ok:
                    verdict.system_warnings.append(
                        f"Calendar {account_id} could not be checked"
                    )

        logger.info(
            "Conflict check %s: blocking=%s warning=%s accessible=%s",
            start.isoformat(), verdict.blocking, verdict.warning, verdict.accessible,
        )
        return verdict

    async def has_conflict(
        self, event_start: datetime, event_end: datetime | None = None
    ) -> bool:
        """True only when a blocking calendar reports a conflict. Never raises."""
        try:
            verdict = await self.check(event_start, event_end)
        except Exception as exc:
            logger.error("Conflict check failed for %s: %s", event_start, exc)
            return False
        return verdict.blocking
