"""
Family Event Planner — Event Lifecycle Manager.

The state machine for every discovered event and the only component that
changes event status. Writes for one event are serialized with a per-event
asyncio.Lock; different events proceed in parallel on a bounded pool.

    discovered -> filtered -> conflict_checked -> proposed
        -> approved | rejected | expired
    approved -> registering | manual_required
    registering -> registered | manual_required | payment_blocked
    any non-terminal state -> cancelled
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, AsyncIterator

from family_planner.core.errors import InvalidTransitionError
from family_planner.core.response_classifier import Intent
from family_planner.core.timeutil import ensure_aware, utcnow
from family_planner.data.models import (
    REDRIVABLE_STATUSES,
    TERMINAL_STATUSES,
    AttemptOutcome,
    Event,
    EventStatus,
    Resolution,
)
from family_planner.ports.notification_port import OutgoingMessage

if TYPE_CHECKING:
    from family_planner.core.conflict_checker import CalendarConflictChecker
    from family_planner.core.notification_gateway import NotificationGateway
    from family_planner.core.registration_orchestrator import RegistrationOrchestrator
    from family_planner.data.db import EventStore
    from family_planner.data.models import FamilyProfile, PendingApproval, RegistrationAttempt
    from family_planner.ports.discovery_port import DiscoveredEvent

logger = logging.getLogger(__name__)

S = EventStatus

ALLOWED_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    S.DISCOVERED: frozenset({S.FILTERED, S.CANCELLED}),
    S.FILTERED: frozenset({S.CONFLICT_CHECKED, S.CANCELLED}),
    S.CONFLICT_CHECKED: frozenset({S.PROPOSED, S.CANCELLED}),
    S.PROPOSED: frozenset({S.APPROVED, S.REJECTED, S.EXPIRED, S.CANCELLED}),
    S.APPROVED: frozenset({S.REGISTERING, S.MANUAL_REQUIRED, S.CANCELLED}),
    S.REGISTERING: frozenset({S.REGISTERED, S.MANUAL_REQUIRED, S.PAYMENT_BLOCKED, S.CANCELLED}),
}

_REPLY_RESOLUTIONS = {
    Intent.APPROVE: Resolution.APPROVE,
    Intent.REJECT: Resolution.REJECT,
    Intent.CANCEL: Resolution.CANCEL,
}


def check_eligibility(
    event: Event,
    child_ages: list[int],
    now: datetime,
    lookahead_days: int,
) -> str | None:
    """Return why the event is not eligible, or None if it is."""
    if event.start <= now:
        return "event has already started"
    if event.start > now + timedelta(days=lookahead_days):
        return f"event is more than {lookahead_days} days away"
    if (event.age_min is not None or event.age_max is not None) and child_ages:
        lo = event.age_min if event.age_min is not None else 0
        hi = event.age_max if event.age_max is not None else 200
        if not any(lo <= age <= hi for age in child_ages):
            return f"no child in age range {lo}-{hi}"
    return None


class EventLifecycleManager:
    """Drives events through the approval-and-registration pipeline."""

    def __init__(
        self,
        store: EventStore,
        checker: CalendarConflictChecker,
        gateway: NotificationGateway,
        orchestrator: RegistrationOrchestrator,
        profile: FamilyProfile,
        lookahead_days: int = 60,
        concurrency: int = 4,
        tz_name: str = "America/Los_Angeles",
    ) -> None:
        self._store = store
        self._checker = checker
        self._gateway = gateway
        self._orchestrator = orchestrator
        self._profile = profile
        self._lookahead_days = lookahead_days
        self._concurrency = concurrency
        self._tz_name = tz_name
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    @asynccontextmanager
    async def _event_lock(self, event_id: int) -> AsyncIterator[None]:
        """Per-event lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(event_id, asyncio.Lock())
        self._lock_users[event_id] = self._lock_users.get(event_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[event_id] -= 1
            if not self._lock_users[event_id]:
                del self._lock_users[event_id]
                del self._locks[event_id]

    # ------------------------------------------------------------------
    # State machine core
    # ------------------------------------------------------------------

    def transition(self, event: Event, to: EventStatus, reason: str = "") -> bool:
        """Apply one status change. Caller must hold the event's lock.

        Returns False for a no-op (already there, or event is terminal).
        Raises InvalidTransitionError for any other disallowed change.
        """
        current = event.status
        if current == to:
            return False
        if current in TERMINAL_STATUSES:
            logger.info(
                "Event #%d is %s (terminal); ignoring request to move to %s",
                event.id, current.value, to.value,
            )
            return False
        if to not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(event.id, current.value, to.value)

        if not self._store.update_status(event.id, current, to, reason):
            fresh = self._store.load_event(event.id)
            logger.warning(
                "Event #%d status moved underneath us (now %s); %s -> %s dropped",
                event.id, fresh.status.value if fresh else "missing", current.value, to.value,
            )
            if fresh is not None:
                event.status = fresh.status
            return False

        event.status = to
        return True

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def ingest(self, discovered: DiscoveredEvent) -> Event:
        """Store a discovered event, deduped by (source, source_id).

        Events still upstream of a proposal get their attributes refreshed;
        anything further along is left alone.
        """
        start = ensure_aware(discovered.start, self._tz_name)
        end = ensure_aware(discovered.end, self._tz_name) if discovered.end else None

        existing = self._store.find_event_by_source(discovered.source, discovered.source_id)
        if existing is None:
            event = Event(
                id=0,
                source=discovered.source,
                source_id=discovered.source_id,
                title=discovered.title,
                start=start,
                end=end,
                location=discovered.location,
                cost=discovered.cost,
                age_min=discovered.age_min,
                age_max=discovered.age_max,
                registration_url=discovered.registration_url,
                description=discovered.description,
            )
            return self._store.insert_event(event)

        if existing.status not in REDRIVABLE_STATUSES:
            logger.debug(
                "Event #%d (%s/%s) already %s; discovery ignored",
                existing.id, existing.source, existing.source_id, existing.status.value,
            )
            return existing

        existing.title = discovered.title
        existing.start = start
        existing.end = end
        existing.location = discovered.location
        existing.cost = discovered.cost
        existing.age_min = discovered.age_min
        existing.age_max = discovered.age_max
        existing.registration_url = discovered.registration_url
        existing.description = discovered.description
        self._store.save_event(existing)
        logger.info("Event #%d refreshed from %s", existing.id, existing.source)
        return existing

    async def process(self, event_id: int, now: datetime | None = None) -> EventStatus | None:
        """Advance an event as far as it can go without a human reply."""
        now = now or utcnow()
        async with self._event_lock(event_id):
            event = self._store.load_event(event_id)
            if event is None:
                logger.warning("Event #%d not found", event_id)
                return None

            if event.status == S.DISCOVERED:
                reason = check_eligibility(
                    event, self._profile.child_ages(now.date()), now, self._lookahead_days
                )
                if reason:
                    if event.filter_reason != reason:
                        event.filter_reason = reason
                        self._store.save_event(event)
                    logger.info("Event #%d not eligible: %s", event.id, reason)
                    return event.status
                if event.filter_reason:
                    event.filter_reason = None
                    self._store.save_event(event)
                self.transition(event, S.FILTERED, "eligible")

            verdict = None
            if event.status in (S.FILTERED, S.CONFLICT_CHECKED):
                verdict = await self._checker.check(event.start, event.end)
                event.conflict_summary = verdict.to_dict()
                self._store.save_event(event)
                self.transition(event, S.CONFLICT_CHECKED, "calendar checked")
                if verdict.blocking:
                    logger.info("Event #%d blocked by calendar conflict; not proposing", event.id)
                    return event.status

            if event.status == S.CONFLICT_CHECKED:
                approval = await self._gateway.propose(event, verdict)
                if approval is None:
                    logger.warning("Event #%d proposal not sent; will retry next cycle", event.id)
                    return event.status
                self.transition(event, S.PROPOSED, f"awaiting reply (Ref {approval.correlation_key})")

            return event.status

    async def run_cycle(self, discovered: list[DiscoveredEvent]) -> dict[str, EventStatus | None]:
        """Ingest a discovery batch and drive each event on a bounded pool.

        A failure on one event is logged and stops only that event.
        """
        batch: dict[tuple[str, str], DiscoveredEvent] = {}
        for item in discovered:
            batch[(item.source, item.source_id)] = item

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _drive(item: DiscoveredEvent) -> EventStatus | None:
            async with semaphore:
                event = self.ingest(item)
                return await self.process(event.id)

        keys = list(batch)
        results = await asyncio.gather(*(_drive(batch[k]) for k in keys), return_exceptions=True)

        summary: dict[str, EventStatus | None] = {}
        for (source, source_id), result in zip(keys, results):
            label = f"{source}/{source_id}"
            if isinstance(result, BaseException):
                logger.error("Pipeline error for %s: %s", label, result)
                summary[label] = None
            else:
                summary[label] = result
        logger.info("Cycle complete: %d event(s)", len(summary))
        return summary

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def handle_reply(
        self, destination: str, raw_text: str, message_id: str | None = None
    ) -> EventStatus | None:
        """Route an inbound SMS/email reply to its pending approval."""
        reply = self._gateway.interpret_reply(destination, raw_text, message_id)
        approval = reply.approval
        if approval is None:
            logger.warning("Reply from %s matches no pending approval; ignored", destination)
            return None

        intent = reply.classification.intent
        if intent == Intent.PAYMENT_CONFIRM:
            latest = self._store.latest_approval_for_event(approval.event_id)
            if latest is None or latest.id != approval.id:
                logger.warning(
                    "Payment confirmation for stale approval #%d of event #%d ignored",
                    approval.id, approval.event_id,
                )
                event = self._store.load_event(approval.event_id)
                return event.status if event else None
            return await self.acknowledge_registration(approval.event_id, reply.text)

        registering = None
        async with self._event_lock(approval.event_id):
            event = self._store.load_event(approval.event_id)
            if event is None:
                return None

            current = self._store.load_pending_approval(approval.id)
            if current is None or current.resolved:
                logger.info(
                    "Approval #%d already resolved (%s); reply ignored",
                    approval.id, current.resolution.value if current and current.resolution else "-",
                )
                return event.status

            latest = self._store.latest_approval_for_event(event.id)
            if latest is None or latest.id != approval.id:
                logger.warning("Reply for stale approval #%d of event #%d ignored", approval.id, event.id)
                return event.status

            if intent == Intent.UNCLEAR:
                logger.info("Unclear reply for event #%d; asking again", event.id)
                await self._gateway.reprompt(current, event)
                return event.status

            resolution = _REPLY_RESOLUTIONS[intent]
            if not self._gateway.resolve(current, resolution):
                return event.status

            if resolution == Resolution.APPROVE:
                registering = await self._approve(event)
            elif resolution == Resolution.REJECT:
                self.transition(event, S.REJECTED, "family declined")
            else:
                self.transition(event, S.CANCELLED, "family cancelled")

            if registering is None:
                return event.status

        return await self._register(registering)

    async def _approve(self, event: Event) -> Event | None:
        """proposed -> approved, then route. Returns the event if it should be registered.

        Caller holds the lock.
        """
        if not self.transition(event, S.APPROVED, "family approved"):
            return None

        if not event.is_free:
            self.transition(event, S.MANUAL_REQUIRED, f"paid event ({event.cost!r})")
            await self._send_fallback(event, "this event has a cost, so it must be booked by hand")
            return None

        if not event.registration_url:
            self.transition(event, S.MANUAL_REQUIRED, "no registration link")
            await self._send_fallback(event, "no registration link was found")
            return None

        self.transition(event, S.REGISTERING, "starting automated registration")
        return event

    async def on_approval(self, approval: PendingApproval) -> EventStatus | None:
        """Resolve an approval as approved outside the reply path (e.g. dashboard)."""
        registering = None
        async with self._event_lock(approval.event_id):
            event = self._store.load_event(approval.event_id)
            if event is None:
                return None
            latest = self._store.latest_approval_for_event(event.id)
            if latest is None or latest.id != approval.id:
                logger.warning("Approval #%d is stale for event #%d; ignored", approval.id, event.id)
                return event.status
            if not self._gateway.resolve(approval, Resolution.APPROVE):
                logger.warning("Approval #%d already resolved; ignored", approval.id)
                return event.status
            registering = await self._approve(event)
            if registering is None:
                return event.status
        return await self._register(registering)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def _register(self, event: Event) -> EventStatus:
        """Run automation without holding the lock so a withdrawal can interrupt it."""
        attempt = await self._orchestrator.register(event)

        async with self._event_lock(event.id):
            fresh = self._store.load_event(event.id)
            if fresh is None or fresh.status != S.REGISTERING:
                logger.info(
                    "Event #%d left registering during automation (%s)",
                    event.id, fresh.status.value if fresh else "missing",
                )
                return fresh.status if fresh else S.CANCELLED
            await self._apply_attempt(fresh, attempt)
            return fresh.status

    async def register(self, event_id: int) -> EventStatus | None:
        """Re-run registration for an event that is already registering (e.g. after a restart)."""
        event = self._store.load_event(event_id)
        if event is None or event.status != S.REGISTERING:
            return event.status if event else None
        return await self._register(event)

    async def _apply_attempt(self, event: Event, attempt: RegistrationAttempt | None) -> None:
        if attempt is not None:
            event.registration_result = {
                "outcome": attempt.outcome.value,
                "adapter": attempt.adapter_id,
                "attempt": attempt.attempt_number,
                "detail": attempt.detail,
                "confirmation_number": attempt.confirmation_number,
                "evidence": attempt.evidence,
            }
            self._store.save_event(event)

        if attempt is not None and attempt.outcome == AttemptOutcome.SUCCESS:
            self.transition(event, S.REGISTERED, attempt.confirmation_number or "registered")
            confirmation = f" Confirmation: {attempt.confirmation_number}." if attempt.confirmation_number else ""
            await self._gateway.notify_family(
                OutgoingMessage(
                    subject=f"Registered: {event.title}",
                    body=f"You're registered for {event.title}.{confirmation}",
                )
            )
            return

        if attempt is not None and attempt.outcome == AttemptOutcome.PAYMENT_BLOCKED:
            self.transition(event, S.PAYMENT_BLOCKED, attempt.detail)
            logger.critical("Event #%d payment-blocked: %s", event.id, attempt.detail)
            await self._gateway.alert_operator(
                OutgoingMessage(
                    subject=f"PAYMENT GUARD blocked registration: {event.title}",
                    body=(
                        f"Event #{event.id} '{event.title}' was blocked before submit.\n"
                        f"Reason: {attempt.detail}\n"
                        f"URL: {event.registration_url}\n"
                        f"Evidence: {attempt.evidence or 'none'}"
                    ),
                )
            )
            await self._send_fallback(event, "the registration page asks for payment")
            return

        reason = attempt.detail if attempt is not None else "no attempt was made"
        self.transition(event, S.MANUAL_REQUIRED, reason)
        await self._send_fallback(event, reason)

    async def _send_fallback(self, event: Event, reason: str) -> None:
        fallback = self._orchestrator.manual_fallback(event, reason)
        await self._gateway.notify_family(
            OutgoingMessage(subject=f"Please register: {event.title}", body=fallback.message)
        )

    async def acknowledge_registration(self, event_id: int, text: str = "") -> EventStatus | None:
        """The family says they paid/booked by hand. Recorded; never treated as approval."""
        async with self._event_lock(event_id):
            event = self._store.load_event(event_id)
            if event is None:
                return None
            result = dict(event.registration_result or {})
            result["family_confirmed"] = utcnow().isoformat()
            if text:
                result["family_note"] = text[:200]
            event.registration_result = result
            self._store.save_event(event)
            logger.info("Event #%d: family confirmed manual booking (status %s)", event.id, event.status.value)
            return event.status

    # ------------------------------------------------------------------
    # Expiry and withdrawal
    # ------------------------------------------------------------------

    async def expire(self, approval: PendingApproval) -> EventStatus | None:
        """Move the event of an already-expired approval to expired."""
        async with self._event_lock(approval.event_id):
            event = self._store.load_event(approval.event_id)
            if event is None:
                return None
            latest = self._store.latest_approval_for_event(event.id)
            if latest is None or latest.id != approval.id:
                return event.status
            if event.status == S.PROPOSED:
                self.transition(event, S.EXPIRED, "no reply before deadline")
            return event.status

    async def tick(self, now: datetime | None = None) -> int:
        """One expiry sweep. Returns how many events expired."""
        expired = 0
        for approval in self._gateway.expire_stale(now):
            if await self.expire(approval) == S.EXPIRED:
                expired += 1
        return expired

    async def withdraw(self, event_id: int, reason: str = "withdrawn") -> EventStatus | None:
        """External cancellation. Any in-flight registration stops at its next phase boundary."""
        async with self._event_lock(event_id):
            event = self._store.load_event(event_id)
            if event is None:
                return None
            open_approval = self._store.unresolved_approval_for_event(event_id)
            if open_approval is not None:
                self._gateway.resolve(open_approval, Resolution.CANCEL)
            self.transition(event, S.CANCELLED, reason)
            return event.status
