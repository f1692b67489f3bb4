"""Tests for family_planner.core.registration_orchestrator — retries, guard, fallback."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from family_planner.core.errors import (
    PaymentGuardViolation,
    TerminalRegistrationError,
    TransientRegistrationError,
)
from family_planner.core.payment_guard import FormField, PageSnapshot, PaymentGuard
from family_planner.core.registration_orchestrator import (
    RegistrationOrchestrator,
    backoff_delay,
    build_manual_fallback,
    estimate_duration,
    google_calendar_url,
    is_transient,
)
from family_planner.data.models import AttemptOutcome, Event, EventStatus

SNAPSHOT_PATH = "family_planner.core.registration_orchestrator.snapshot_page"


def _free_snapshot(*args, **kwargs):
    return PageSnapshot(
        url="https://sfpl.org/events/123",
        text="Register for story time",
        fields=[FormField(name="email", type="email")],
        buttons=["Register"],
        declared_cost=0.0,
    )


def _paid_snapshot(*args, **kwargs):
    snap = _free_snapshot()
    snap.fields.append(FormField(name="cvv"))
    return snap


@pytest.fixture
def adapter():
    a = MagicMock()
    a.id = "sf-library"
    a.open = AsyncMock()
    a.fill = AsyncMock()
    a.submit = AsyncMock(return_value={"confirmation_number": "ABC123"})
    return a


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator(store, fake_browser, adapter, profile, sleep, tmp_path):
    registry = MagicMock()
    registry.for_event.return_value = adapter
    return RegistrationOrchestrator(
        store=store,
        browser=fake_browser,
        registry=registry,
        guard=PaymentGuard(),
        profile=profile,
        max_attempts=3,
        backoff_seconds=2.0,
        backoff_max_seconds=30.0,
        evidence_dir=str(tmp_path / "evidence"),
        sleep=sleep,
    )


@pytest.fixture
def registering_event(store, make_event):
    event = make_event()
    store.update_status(event.id, EventStatus.DISCOVERED, EventStatus.REGISTERING)
    return store.load_event(event.id)


# ---------------------------------------------------------------------------
# Tests for helpers
# ---------------------------------------------------------------------------


class TestIsTransient:
    @pytest.mark.parametrize(
        "exc",
        [
            TransientRegistrationError("slow"),
            PlaywrightTimeoutError("Timeout 30000ms exceeded"),
            PlaywrightError("net::ERR_CONNECTION_RESET"),
            ConnectionResetError("connection reset"),
        ],
    )
    def test_transient(self, exc):
        assert is_transient(exc) is True

    @pytest.mark.parametrize(
        "exc",
        [
            TerminalRegistrationError("no form"),
            PaymentGuardViolation("card field"),
            PlaywrightError("Element is not visible"),
            ValueError("bad"),
        ],
    )
    def test_not_transient(self, exc):
        assert is_transient(exc) is False


class TestBackoff:
    def test_doubles_and_caps(self):
        assert [backoff_delay(n, 2.0, 10.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 10.0]


class TestManualFallback:
    def _event(self, title, end=None):
        start = datetime(2026, 11, 14, 18, 0, tzinfo=timezone.utc)
        return Event(
            id=1, source="sf-library", source_id="x", title=title, start=start, end=end,
            location="Main Library", registration_url="https://sfpl.org/events/1",
        )

    @pytest.mark.parametrize(
        "title, minutes",
        [
            ("Toddler Story Time", 30),
            ("Lego Workshop", 90),
            ("Art Class", 90),
            ("Harvest Festival", 240),
            ("Puppet Show", 120),
        ],
    )
    def test_estimate_duration(self, title, minutes):
        assert estimate_duration(self._event(title)) == timedelta(minutes=minutes)

    def test_explicit_end_wins(self):
        event = self._event("Story Time", end=datetime(2026, 11, 14, 19, 0, tzinfo=timezone.utc))
        assert estimate_duration(event) == timedelta(hours=1)

    def test_calendar_url(self):
        url = google_calendar_url(self._event("Toddler Story Time"))
        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://calendar.google.com/calendar/render?")
        assert query["action"] == ["TEMPLATE"]
        assert query["dates"] == ["20261114T180000Z/20261114T183000Z"]
        assert "https://sfpl.org/events/1" in query["details"][0]

    def test_message_has_link_and_family(self, profile):
        fallback = build_manual_fallback(self._event("Story Time"), profile, "site changed")
        assert fallback.registration_url == "https://sfpl.org/events/1"
        assert "site changed" in fallback.message
        assert "Register here: https://sfpl.org/events/1" in fallback.message
        assert "Sam Rivera" in fallback.message
        assert "Ava (5)" in fallback.message
        assert fallback.calendar_url in fallback.message


# ---------------------------------------------------------------------------
# Tests for register
# ---------------------------------------------------------------------------


class TestRegister:
    @pytest.mark.asyncio
    async def test_success_first_try(self, orchestrator, registering_event, adapter, store, sleep):
        with patch(SNAPSHOT_PATH, AsyncMock(side_effect=_free_snapshot)):
            attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.SUCCESS
        assert attempt.confirmation_number == "ABC123"
        assert attempt.evidence.endswith(f"event-{registering_event.id}-attempt-1-success.png")
        assert len(store.list_registration_attempts(registering_event.id)) == 1
        adapter.fill.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_then_success(self, orchestrator, registering_event, adapter, store, sleep):
        adapter.open.side_effect = [
            TransientRegistrationError("timed out"),
            PlaywrightTimeoutError("Timeout 30000ms exceeded"),
            None,
        ]
        with patch(SNAPSHOT_PATH, AsyncMock(side_effect=_free_snapshot)):
            attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.SUCCESS
        assert attempt.attempt_number == 3
        outcomes = [a.outcome for a in store.list_registration_attempts(registering_event.id)]
        assert outcomes == [
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.RETRYABLE_FAILURE,
            AttemptOutcome.SUCCESS,
        ]
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, orchestrator, registering_event, adapter, store, sleep):
        adapter.open.side_effect = TransientRegistrationError("network down")
        attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.RETRYABLE_FAILURE
        assert adapter.open.await_count == 3
        assert len(store.list_registration_attempts(registering_event.id)) == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_terminal_failure_not_retried(self, orchestrator, registering_event, adapter, sleep):
        adapter.fill.side_effect = TerminalRegistrationError("form changed")
        attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.TERMINAL_FAILURE
        assert attempt.detail == "form changed"
        assert attempt.evidence.endswith("attempt-1-failure.png")
        assert adapter.open.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_guard_blocks_submit(self, orchestrator, registering_event, adapter, store):
        with patch(SNAPSHOT_PATH, AsyncMock(side_effect=_paid_snapshot)):
            attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.PAYMENT_BLOCKED
        adapter.submit.assert_not_awaited()

        again = await orchestrator.register(registering_event)
        assert again.outcome == AttemptOutcome.PAYMENT_BLOCKED
        assert adapter.open.await_count == 1
        assert len(store.list_registration_attempts(registering_event.id)) == 1

    @pytest.mark.asyncio
    async def test_paid_event_never_opens_browser(self, orchestrator, store, make_event, fake_browser, adapter):
        event = make_event(cost=15.0)
        store.update_status(event.id, EventStatus.DISCOVERED, EventStatus.REGISTERING)

        attempt = await orchestrator.register(store.load_event(event.id))

        assert attempt.outcome == AttemptOutcome.PAYMENT_BLOCKED
        assert fake_browser.pages == []
        adapter.open.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_cost_is_blocked(self, orchestrator, store, make_event, fake_browser):
        event = make_event(cost=None)
        attempt = await orchestrator.register(event)
        assert attempt.outcome == AttemptOutcome.PAYMENT_BLOCKED
        assert fake_browser.pages == []

    @pytest.mark.asyncio
    async def test_withdrawn_event_aborts(self, orchestrator, store, make_event, adapter):
        event = make_event()
        store.update_status(event.id, EventStatus.DISCOVERED, EventStatus.CANCELLED)

        attempt = await orchestrator.register(store.load_event(event.id))

        assert attempt.outcome == AttemptOutcome.TERMINAL_FAILURE
        assert attempt.detail == "cancelled"
        adapter.open.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_evidence_failure_does_not_break_attempt(
        self, orchestrator, registering_event, fake_browser
    ):
        original = fake_browser.new_page

        def _broken_screenshots():
            ctx = original()

            class _Wrap:
                async def __aenter__(self_inner):
                    page = await ctx.__aenter__()
                    page.screenshot = AsyncMock(side_effect=OSError("disk full"))
                    return page

                async def __aexit__(self_inner, *exc):
                    return await ctx.__aexit__(*exc)

            return _Wrap()

        fake_browser.new_page = _broken_screenshots
        with patch(SNAPSHOT_PATH, AsyncMock(side_effect=_free_snapshot)):
            attempt = await orchestrator.register(registering_event)

        assert attempt.outcome == AttemptOutcome.SUCCESS
        assert attempt.evidence is None
