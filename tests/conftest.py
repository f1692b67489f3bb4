"""Shared test fixtures and configuration.

Sets up fake environment variables so family_planner.config doesn't
sys.exit(), and provides common fixtures: a temp event store, a family
profile, and in-memory fakes for the calendar, notifier and browser ports.
"""

import os

# Patch env vars BEFORE any family_planner imports
os.environ.setdefault("APPROVAL_CHANNEL", "sms")
os.environ.setdefault("APPROVAL_PHONE", "+14155550100")
os.environ.setdefault("APPROVAL_EMAIL", "parents@example.com")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("CALENDAR_ACCOUNTS", "family@example.com:blocking,personal:warning")

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from family_planner.data.models import Child, Event, FamilyProfile


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_events.db")


@pytest.fixture
def store(tmp_db_path):
    """Return an EventStore backed by a temp file."""
    from family_planner.data.db import EventStore
    return EventStore(db_path=tmp_db_path)


@pytest.fixture
def profile():
    return FamilyProfile(
        parent1_name="Sam Rivera",
        parent1_email="sam@example.com",
        phone="+14155550100",
        children=[
            Child(name="Ava", birthdate=date(date.today().year - 5, 1, 1)),  # age 5
        ],
    )


@pytest.fixture
def future_start():
    """A start time a few days out, on the hour, in UTC."""
    return (datetime.now(timezone.utc) + timedelta(days=5)).replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def make_event(store, future_start):
    """Insert an Event and return it. Keyword args override defaults."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        fields = dict(
            id=0,
            source="sf-library",
            source_id=f"evt-{counter['n']}",
            title="Toddler Story Time",
            start=future_start,
            location="Main Library",
            cost=0.0,
            registration_url="https://sfpl.org/events/123",
        )
        fields.update(overrides)
        return store.insert_event(Event(**fields))

    return _make


class FakeNotifier:
    """Records sends; returns sequential message ids."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, destination, message):
        if self.fail:
            from family_planner.ports.notification_port import NotificationError
            raise NotificationError("transport down")
        self.sent.append((destination, message))
        return f"SM{len(self.sent):04d}"


@pytest.fixture
def notifier():
    return FakeNotifier()


class FakeCalendar:
    """CalendarPort fake: per-account canned events or exceptions."""

    def __init__(self, events=None, errors=None, delay=0.0):
        self.events = events or {}
        self.errors = errors or {}
        self.delay = delay
        self.calls = []

    async def list_events(self, account_id, start, end):
        import asyncio

        self.calls.append((account_id, start, end))
        if self.delay:
            await asyncio.sleep(self.delay)
        if account_id in self.errors:
            raise self.errors[account_id]
        return list(self.events.get(account_id, []))


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


class FakeBrowser:
    """PlaywrightBrowser stand-in yielding a MagicMock page."""

    def __init__(self):
        self.pages = []

    @asynccontextmanager
    async def new_page(self):
        page = MagicMock()
        page.url = "https://sfpl.org/events/123"
        page.screenshot = AsyncMock()
        self.pages.append(page)
        yield page


@pytest.fixture
def fake_browser():
    return FakeBrowser()
