"""Tests for the CalDAV calendar adapter.

All CalDAV client calls are mocked.
"""

import pytest
from unittest.mock import MagicMock, patch
from datetime import datetime

from family_planner.adapters.caldav_calendar import CalDAVCalendarAdapter, _parse_vevent
from family_planner.ports.calendar_port import CalendarError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PATCH_GET_CAL = "family_planner.adapters.caldav_calendar._get_calendar"


def _ical(uid="test-uid-123", summary="Soccer practice", dtstart="DTSTART:20261114T100000",
          dtend="DTEND:20261114T110000"):
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        dtstart,
    ]
    if dtend:
        lines.append(dtend)
    lines += ["END:VEVENT", "END:VCALENDAR", ""]
    return "\r\n".join(lines)


def _caldav_event(**kwargs):
    ev = MagicMock()
    ev.data = _ical(**kwargs)
    return ev


# ---------------------------------------------------------------------------
# Tests for _parse_vevent
# ---------------------------------------------------------------------------


class TestParseVevent:
    def test_timed_event(self):
        events = _parse_vevent(_ical())
        assert events == [
            {
                "id": "test-uid-123",
                "title": "Soccer practice",
                "start": "2026-11-14T10:00:00",
                "end": "2026-11-14T11:00:00",
                "all_day": False,
            }
        ]

    def test_utc_event_keeps_offset(self):
        events = _parse_vevent(_ical(dtstart="DTSTART:20261114T180000Z", dtend="DTEND:20261114T190000Z"))
        assert events[0]["start"] == "2026-11-14T18:00:00+00:00"

    def test_all_day_event(self):
        events = _parse_vevent(
            _ical(dtstart="DTSTART;VALUE=DATE:20261114", dtend="DTEND;VALUE=DATE:20261115")
        )
        assert events[0]["all_day"] is True
        assert events[0]["start"] == "2026-11-14"
        assert events[0]["end"] == "2026-11-15"

    def test_missing_end(self):
        events = _parse_vevent(_ical(dtend=None))
        assert events[0]["end"] == ""


# ---------------------------------------------------------------------------
# Tests for CalDAVCalendarAdapter.list_events
# ---------------------------------------------------------------------------


class TestListEvents:
    @pytest.mark.asyncio
    @patch(_PATCH_GET_CAL)
    async def test_returns_parsed_events(self, mock_get_cal):
        calendar = MagicMock()
        calendar.search.return_value = [_caldav_event(uid="a"), _caldav_event(uid="b")]
        mock_get_cal.return_value = calendar

        adapter = CalDAVCalendarAdapter("https://dav.example.com", "user", "pw")
        start = datetime(2026, 11, 14)
        end = datetime(2026, 11, 15)
        events = await adapter.list_events("Family", start, end)

        assert [e["id"] for e in events] == ["a", "b"]
        mock_get_cal.assert_called_once_with("https://dav.example.com", "user", "pw", "Family")
        calendar.search.assert_called_once_with(start=start, end=end, event=True, expand=True)

    @pytest.mark.asyncio
    @patch(_PATCH_GET_CAL)
    async def test_calendar_error_passes_through(self, mock_get_cal):
        mock_get_cal.side_effect = CalendarError("Calendar 'Family' not found")
        adapter = CalDAVCalendarAdapter("https://dav.example.com", "user", "pw")
        with pytest.raises(CalendarError, match="not found"):
            await adapter.list_events("Family", datetime(2026, 11, 14), datetime(2026, 11, 15))

    @pytest.mark.asyncio
    @patch(_PATCH_GET_CAL)
    async def test_client_error_wrapped(self, mock_get_cal):
        mock_get_cal.side_effect = ConnectionError("connection refused")
        adapter = CalDAVCalendarAdapter("https://dav.example.com", "user", "pw")
        with pytest.raises(CalendarError, match="Failed to list events"):
            await adapter.list_events("Family", datetime(2026, 11, 14), datetime(2026, 11, 15))
