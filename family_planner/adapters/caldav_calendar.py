"""CalDAV calendar adapter — implements CalendarPort for CalDAV servers.

Supports iCloud, Nextcloud, Fastmail, and any CalDAV-compliant server.
Uses the caldav library (sync) wrapped with asyncio.to_thread for async
compatibility. The account id is the calendar's display name on the server.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime

import caldav
from icalendar import Calendar as iCalendar

from family_planner.ports.calendar_port import CalendarError

logger = logging.getLogger(__name__)


def _get_calendar(url: str, username: str, password: str, name: str) -> caldav.Calendar:
    """Connect to the CalDAV server and return the calendar called `name`."""
    client = caldav.DAVClient(url=url, username=username, password=password)
    principal = client.principal()
    calendars = principal.calendars()

    if not calendars:
        raise CalendarError("No calendars found on the CalDAV server.")

    for cal in calendars:
        if cal.name == name:
            return cal
    raise CalendarError(
        f"Calendar '{name}' not found. Available: {[c.name for c in calendars]}"
    )


def _parse_vevent(data: str | bytes) -> list[dict]:
    """Parse iCalendar text into CalendarPort dicts (one per VEVENT)."""
    try:
        cal = iCalendar.from_ical(data)
    except ValueError as exc:
        logger.warning("Skipping unparseable CalDAV event: %s", exc)
        return []

    events = []
    for component in cal.walk("VEVENT"):
        dtstart = component.get("dtstart")
        if dtstart is None:
            continue
        dtend = component.get("dtend")
        start = dtstart.dt
        end = dtend.dt if dtend is not None else None
        all_day = isinstance(start, date) and not isinstance(start, datetime)
        events.append(
            {
                "id": str(component.get("uid", "")),
                "title": str(component.get("summary", "(no title)")),
                "start": start.isoformat(),
                "end": end.isoformat() if end is not None else "",
                "all_day": all_day,
            }
        )
    return events


class CalDAVCalendarAdapter:
    """CalDAV implementation of CalendarPort."""

    def __init__(self, url: str, username: str, password: str) -> None:
        self._url = url
        self._username = username
        self._password = password

    async def list_events(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[dict]:
        try:
            cal = await asyncio.to_thread(
                _get_calendar, self._url, self._username, self._password, account_id
            )
            results = await asyncio.to_thread(
                cal.search, start=start, end=end, event=True, expand=True
            )
        except CalendarError:
            raise
        except Exception as exc:
            logger.error("CalDAV error (list_events %s): %s", account_id, exc)
            raise CalendarError(f"Failed to list events for {account_id}: {exc}") from exc

        events = []
        for ev in results:
            events.extend(_parse_vevent(ev.data))

        logger.info("Found %d CalDAV event(s) on %s", len(events), account_id)
        return events
