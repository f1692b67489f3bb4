"""Google Calendar adapter — implements CalendarPort for the Google Calendar API.

All Google-specific logic lives here. The conflict checker never imports this
directly; it depends on the CalendarPort protocol. The account id is the
Google calendar id (an email address or "primary").
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from family_planner.integrations.google_auth import get_calendar_service
from family_planner.ports.calendar_port import CalendarError

logger = logging.getLogger(__name__)


def _parse_item(item: dict) -> dict:
    start = item.get("start", {})
    end = item.get("end", {})
    all_day = "date" in start and "dateTime" not in start
    return {
        "id": item.get("id", ""),
        "title": item.get("summary", "(no title)"),
        "start": start.get("dateTime", start.get("date", "")),
        "end": end.get("dateTime", end.get("date", "")),
        "all_day": all_day,
    }


class GoogleCalendarAdapter:
    """Google Calendar implementation of CalendarPort."""

    def __init__(self, service=None) -> None:
        self._service = service

    def _get_service(self):
        if self._service is None:
            self._service = get_calendar_service()
        return self._service

    def _list_sync(self, account_id: str, start: datetime, end: datetime) -> list[dict]:
        service = self._get_service()
        items: list[dict] = []
        page_token = None
        while True:
            result = (
                service.events()
                .list(
                    calendarId=account_id,
                    timeMin=start.isoformat(),
                    timeMax=end.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                )
                .execute()
            )
            items.extend(
                i for i in result.get("items", []) if i.get("status") != "cancelled"
            )
            page_token = result.get("nextPageToken")
            if not page_token:
                return items

    async def list_events(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[dict]:
        try:
            items = await asyncio.to_thread(self._list_sync, account_id, start, end)
        except Exception as exc:
            logger.error("Google Calendar API error for %s: %s", account_id, exc)
            raise CalendarError(f"Failed to list events for {account_id}: {exc}") from exc

        events = [_parse_item(i) for i in items]
        logger.info(
            "Found %d event(s) on %s between %s and %s",
            len(events), account_id, start.isoformat(), end.isoformat(),
        )
        return events
