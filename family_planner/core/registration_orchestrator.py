"""
Family Event Planner — Registration Orchestrator.

Drives a venue adapter through one registration: open page, fill the family
profile, snapshot, payment guard, submit, verify, capture evidence. Transient
failures are retried with exponential backoff; everything else ends the run
and the family gets a manual fallback.

The orchestrator never changes event status itself. It reports the final
RegistrationAttempt and the lifecycle manager decides what that means.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from family_planner.adapters.playwright_browser import snapshot_page
from family_planner.core.errors import (
    PaymentGuardViolation,
    RegistrationCancelled,
    TerminalRegistrationError,
    TransientRegistrationError,
)
from family_planner.data.models import (
    AttemptOutcome,
    EventStatus,
    ManualFallback,
    RegistrationAttempt,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

    from family_planner.adapters.playwright_browser import PlaywrightBrowser
    from family_planner.adapters.venues.base import BaseVenueAdapter
    from family_planner.adapters.venues.registry import AdapterRegistry
    from family_planner.core.payment_guard import PaymentGuard
    from family_planner.data.db import EventStore
    from family_planner.data.models import Event, FamilyProfile

logger = logging.getLogger(__name__)

_TRANSIENT_MARKERS = (
    "timeout", "timed out", "network", "connection", "econnreset", "econnrefused",
    "enotfound", "socket hang up", "net::", "target closed", "has been closed",
    "detached", "navigation failed",
)


def is_transient(exc: BaseException) -> bool:
    """Decide whether a failed attempt is worth retrying."""
    if isinstance(exc, (TerminalRegistrationError, PaymentGuardViolation, RegistrationCancelled)):
        return False
    if isinstance(exc, (TransientRegistrationError, PlaywrightTimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, (PlaywrightError, OSError)):
        message = str(exc).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


class AttemptFailure(Exception):
    """An attempt failed after the page was open; carries the failure screenshot."""

    def __init__(self, cause: Exception, evidence: str | None) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.evidence = evidence


def backoff_delay(attempt_number: int, base_seconds: float, max_seconds: float) -> float:
    """base, 2*base, 4*base, ... capped at max_seconds."""
    return min(base_seconds * (2 ** (attempt_number - 1)), max_seconds)


# ---------------------------------------------------------------------------
# Manual fallback
# ---------------------------------------------------------------------------


def estimate_duration(event: Event) -> timedelta:
    """Event length for calendar links when the source gave no end time."""
    if event.end is not None and event.end > event.start:
        return event.end - event.start
    title = event.title.lower()
    if "story" in title:
        return timedelta(minutes=30)
    if "workshop" in title or "class" in title:
        return timedelta(minutes=90)
    if "festival" in title or "fair" in title:
        return timedelta(hours=4)
    return timedelta(hours=2)


def google_calendar_url(event: Event) -> str:
    """An "add to Google Calendar" link pre-filled with the event."""
    fmt = "%Y%m%dT%H%M%SZ"
    start = event.start.astimezone(timezone.utc)
    end = start + estimate_duration(event)
    details = event.description[:500]
    if event.registration_url:
        details = f"{details}\n\nRegister: {event.registration_url}".strip()
    params = {
        "action": "TEMPLATE",
        "text": event.title,
        "dates": f"{start.strftime(fmt)}/{end.strftime(fmt)}",
        "location": event.location,
        "details": details,
    }
    return "https://calendar.google.com/calendar/render?" + urlencode(params)


def _family_lines(profile: FamilyProfile) -> list[str]:
    lines = []
    if profile.parent1_name:
        lines.append(f"Parent: {profile.parent1_name} ({profile.parent1_email})")
    if profile.parent2_name:
        lines.append(f"Parent: {profile.parent2_name} ({profile.parent2_email})")
    if profile.children:
        kids = ", ".join(
            f"{c.name} ({age})" for c, age in zip(profile.children, profile.child_ages())
        )
        lines.append(f"Children: {kids}")
    if profile.phone:
        lines.append(f"Phone: {profile.phone}")
    return lines


def build_manual_fallback(event: Event, profile: FamilyProfile, reason: str) -> ManualFallback:
    calendar_url = google_calendar_url(event)
    lines = [
        f"Registration needed: {event.title}",
        "",
        f"We couldn't finish this registration automatically ({reason}).",
        f"Register here: {event.registration_url or '(no link provided)'}",
    ]
    family = _family_lines(profile)
    if family:
        lines += ["", "Family info for the form:"] + family
    lines += ["", f"Add to calendar: {calendar_url}"]
    return ManualFallback(
        event_id=event.id,
        reason=reason,
        registration_url=event.registration_url,
        calendar_url=calendar_url,
        message="\n".join(lines),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RegistrationOrchestrator:
    """Runs venue adapters with retry, payment guard and evidence capture."""

    def __init__(
        self,
        store: EventStore,
        browser: PlaywrightBrowser,
        registry: AdapterRegistry,
        guard: PaymentGuard,
        profile: FamilyProfile,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        backoff_max_seconds: float = 30.0,
        evidence_dir: str = "data/evidence",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._browser = browser
        self._registry = registry
        self._guard = guard
        self._profile = profile
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._backoff_max = backoff_max_seconds
        self._evidence_dir = Path(evidence_dir)
        self._sleep = sleep

    def manual_fallback(self, event: Event, reason: str) -> ManualFallback:
        return build_manual_fallback(event, self._profile, reason)

    def _ensure_registering(self, event_id: int) -> None:
        """Phase boundary check: stop if the event was withdrawn meanwhile."""
        current = self._store.load_event(event_id)
        if current is None or current.status != EventStatus.REGISTERING:
            status = current.status.value if current else "missing"
            raise RegistrationCancelled(f"Event {event_id} is {status}, not registering")

    async def _capture_evidence(self, page: Page, event_id: int, attempt_number: int, label: str) -> str | None:
        path = self._evidence_dir / f"event-{event_id}-attempt-{attempt_number}-{label}.png"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(path), full_page=True)
            return str(path)
        except Exception as exc:
            logger.warning("Evidence capture failed for event #%d: %s", event_id, exc)
            return None

    def _record(self, attempt: RegistrationAttempt) -> RegistrationAttempt:
        try:
            return self._store.append_registration_attempt(attempt)
        except PaymentGuardViolation:
            # A blocked event never gets another attempt row
            logger.critical("Refused to record attempt for payment-blocked event #%d", attempt.event_id)
            return attempt

    async def _run_once(
        self, event: Event, adapter: BaseVenueAdapter, attempt_number: int
    ) -> RegistrationAttempt:
        evidence: str | None = None
        async with self._browser.new_page() as page:
            try:
                self._ensure_registering(event.id)
                await adapter.open(page, event.registration_url)

                self._ensure_registering(event.id)
                await adapter.fill(page, self._profile)

                self._ensure_registering(event.id)
                snapshot = await snapshot_page(page, event.cost)
                verdict = self._guard.inspect(snapshot, event.id)
                if not verdict.allowed:
                    raise PaymentGuardViolation(verdict.reason)

                self._ensure_registering(event.id)
                result = await adapter.submit(page)
                evidence = await self._capture_evidence(page, event.id, attempt_number, "success")
                return RegistrationAttempt(
                    event_id=event.id,
                    adapter_id=adapter.id,
                    attempt_number=attempt_number,
                    outcome=AttemptOutcome.SUCCESS,
                    evidence=evidence,
                    detail="registered",
                    confirmation_number=result.get("confirmation_number"),
                )
            except Exception as exc:
                evidence = await self._capture_evidence(page, event.id, attempt_number, "failure")
                raise AttemptFailure(exc, evidence) from exc

    async def register(self, event: Event) -> RegistrationAttempt:
        """Attempt registration; return the last RegistrationAttempt recorded."""
        previous = self._store.list_registration_attempts(event.id)
        for attempt in previous:
            if attempt.outcome == AttemptOutcome.PAYMENT_BLOCKED:
                logger.critical("Event #%d is payment-blocked; not attempting registration", event.id)
                return attempt
        next_number = len(previous) + 1

        adapter = self._registry.for_event(event)

        if not event.is_free:
            # Paid or unknown-cost events never reach a browser
            logger.critical(
                "PAYMENT GUARD: event #%d '%s' reached registration with cost %r",
                event.id, event.title, event.cost,
            )
            return self._record(
                RegistrationAttempt(
                    event_id=event.id,
                    adapter_id=adapter.id,
                    attempt_number=next_number,
                    outcome=AttemptOutcome.PAYMENT_BLOCKED,
                    detail=f"event cost is not verified free ({event.cost!r})",
                )
            )

        last: RegistrationAttempt | None = None
        for i in range(self._max_attempts):
            number = next_number + i
            logger.info("Event #%d: registration attempt %d via %s", event.id, number, adapter.id)
            try:
                attempt = await self._run_once(event, adapter, number)
                return self._record(attempt)
            except AttemptFailure as failure:
                exc, evidence = failure.cause, failure.evidence
            except Exception as raw:
                exc, evidence = raw, None

            if isinstance(exc, RegistrationCancelled):
                logger.info("Event #%d: registration aborted: %s", event.id, exc)
                outcome, detail = AttemptOutcome.TERMINAL_FAILURE, "cancelled"
            elif isinstance(exc, PaymentGuardViolation):
                outcome, detail = AttemptOutcome.PAYMENT_BLOCKED, str(exc)
            elif is_transient(exc):
                outcome, detail = AttemptOutcome.RETRYABLE_FAILURE, str(exc) or type(exc).__name__
            else:
                logger.warning("Event #%d: terminal registration failure: %s", event.id, exc)
                outcome, detail = AttemptOutcome.TERMINAL_FAILURE, str(exc) or type(exc).__name__

            last = self._record(
                RegistrationAttempt(
                    event_id=event.id,
                    adapter_id=adapter.id,
                    attempt_number=number,
                    outcome=outcome,
                    evidence=evidence,
                    detail=detail,
                )
            )
            if outcome != AttemptOutcome.RETRYABLE_FAILURE:
                return last

            if i + 1 < self._max_attempts:
                delay = backoff_delay(i + 1, self._backoff, self._backoff_max)
                logger.warning(
                    "Event #%d: transient failure (%s); retrying in %.1fs", event.id, exc, delay,
                )
                await self._sleep(delay)

        logger.warning("Event #%d: registration retries exhausted", event.id)
        return last
