"""
Family Event Planner — Notification Gateway.

Sends "should we book this?" questions to the family, remembers each one as
a PendingApproval, and maps free-text replies back to the right question.

Correlation order for an inbound reply:
1. the transport message id the reply refers to (email In-Reply-To);
2. a "Ref EVxxxx" token anywhere in the raw reply, quoted text and subject included;
3. the most recent still-open question sent to that sender.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from family_planner.core.response_classifier import Classification, classify, clean_email_body
from family_planner.core.timeutil import utcnow
from family_planner.data.models import Channel, PendingApproval, Resolution
from family_planner.ports.notification_port import OutgoingMessage

if TYPE_CHECKING:
    from family_planner.data.db import EventStore
    from family_planner.data.models import ConflictVerdict, Event
    from family_planner.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

_KEY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_KEY_PATTERN = re.compile(r"\b(EV[A-Z0-9]{4})\b")
_MAX_KEY_TRIES = 5


def new_correlation_key() -> str:
    """Short token quoted in outgoing messages, e.g. EV7K2Q."""
    return "EV" + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(4))


def format_cost(cost: float | None) -> str:
    if cost is None:
        return "Cost unknown"
    if cost == 0:
        return "Free"
    return f"${cost:.2f}"


@dataclass
class InboundReply:
    """A reply after correlation and classification."""

    approval: PendingApproval | None
    classification: Classification
    text: str


class NotificationGateway:
    """Proposal messages out, classified replies in."""

    def __init__(
        self,
        store: EventStore,
        notifier: NotificationPort,
        channel: Channel,
        destination: str,
        timeout_hours: int = 24,
        operator_notifier: NotificationPort | None = None,
        operator_destination: str = "",
        tz_name: str = "America/Los_Angeles",
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._channel = channel
        self._destination = destination
        self._timeout = timedelta(hours=timeout_hours)
        self._operator_notifier = operator_notifier or notifier
        self._operator_destination = operator_destination
        self._tz = ZoneInfo(tz_name)

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    def format_proposal(
        self, event: Event, key: str, verdict: ConflictVerdict | None = None
    ) -> OutgoingMessage:
        when = event.start.astimezone(self._tz).strftime("%a %b %d, %I:%M %p")
        lines = [f"New event: {event.title}", f"{when}" + (f" at {event.location}" if event.location else "")]
        lines.append(format_cost(event.cost))

        if event.age_min is not None or event.age_max is not None:
            lo = event.age_min if event.age_min is not None else 0
            hi = event.age_max if event.age_max is not None else "+"
            lines.append(f"Ages {lo}-{hi}")

        if verdict is not None:
            for account_id, entries in verdict.conflicts.items():
                for entry in entries:
                    lines.append(f"Heads up: overlaps '{entry.title}' ({account_id})")
            for warning in verdict.system_warnings:
                lines.append(f"Note: {warning}")

        if event.is_free:
            lines.append("Reply YES to book or NO to skip.")
        else:
            lines.append("Reply YES for the registration link or NO to skip.")
        lines.append(f"Ref {key}")

        if self._channel == Channel.EMAIL and event.registration_url:
            lines.insert(-2, f"Details: {event.registration_url}")

        subject = f"Family event: {event.title} ({event.start.astimezone(self._tz):%b %d}) Ref {key}"
        return OutgoingMessage(subject=subject, body="\n".join(lines))

    async def propose(
        self, event: Event, verdict: ConflictVerdict | None = None
    ) -> PendingApproval | None:
        """Ask the family about an event.

        Returns the open PendingApproval (an existing one is reused, never
        duplicated), or None if the message could not be sent.
        """
        existing = self._store.unresolved_approval_for_event(event.id)
        if existing is not None:
            logger.info("Event #%d already awaiting reply (Ref %s)", event.id, existing.correlation_key)
            return existing

        now = utcnow()
        approval = None
        for _ in range(_MAX_KEY_TRIES):
            key = new_correlation_key()
            approval = self._store.create_pending_approval(
                event.id, self._channel, self._destination, key,
                expires_at=now + self._timeout, created_at=now,
            )
            if approval is not None:
                break
            existing = self._store.unresolved_approval_for_event(event.id)
            if existing is not None:
                return existing
        if approval is None:
            logger.error("Could not reserve a correlation key for event #%d", event.id)
            return None

        message = self.format_proposal(event, approval.correlation_key, verdict)
        try:
            message_id = await self._notifier.send(self._destination, message)
        except Exception as exc:
            logger.error("Failed to send proposal for event #%d: %s", event.id, exc)
            self._store.discard_pending_approval(approval.id)
            return None

        self._store.set_approval_message_id(approval.id, message_id)
        approval.message_id = message_id
        logger.info(
            "Proposed event #%d via %s (Ref %s, message %s)",
            event.id, self._channel.value, approval.correlation_key, message_id,
        )
        return approval

    async def reprompt(self, approval: PendingApproval, event: Event) -> None:
        """Ask again after an unclear reply. The approval stays pending."""
        message = OutgoingMessage(
            subject=f"Re: Family event: {event.title} Ref {approval.correlation_key}",
            body=(
                f"Sorry, I didn't catch that for \"{event.title}\". "
                f"Reply YES to book or NO to skip. Ref {approval.correlation_key}"
            ),
        )
        try:
            await self._notifier.send(approval.destination, message)
        except Exception as exc:
            logger.warning("Re-prompt for event #%d failed: %s", event.id, exc)

    async def notify_family(self, message: OutgoingMessage) -> bool:
        """Send a notice (manual fallback, confirmation) to the family."""
        try:
            await self._notifier.send(self._destination, message)
            return True
        except Exception as exc:
            logger.error("Failed to notify family (%s): %s", message.subject, exc)
            return False

    async def alert_operator(self, message: OutgoingMessage) -> bool:
        if not self._operator_destination:
            logger.critical("OPERATOR ALERT (no destination configured): %s", message.body)
            return False
        try:
            await self._operator_notifier.send(self._operator_destination, message)
            return True
        except Exception as exc:
            logger.critical("Failed to alert operator (%s): %s", message.subject, exc)
            return False

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    def correlate(
        self, destination: str, text: str, message_id: str | None = None
    ) -> PendingApproval | None:
        """Find the approval a reply answers. ``text`` is the raw reply, quotes included."""
        if message_id:
            approval = self._store.find_approval_by_message_id(message_id)
            if approval is not None:
                return approval

        # the newest message comes first, so its Ref wins over older quoted ones
        match = _KEY_PATTERN.search(text.upper())
        if match:
            approval = self._store.find_approval_by_correlation_key(match.group(1))
            if approval is not None:
                return approval

        approval = self._store.latest_approval_for_destination(destination, unresolved_only=True)
        if approval is not None:
            return approval
        # only reached for duplicates; the caller logs them as already resolved
        return self._store.latest_approval_for_destination(destination)

    def interpret_reply(
        self, destination: str, raw_text: str, message_id: str | None = None
    ) -> InboundReply:
        """Correlate and classify a reply. Does not resolve anything."""
        raw_text = raw_text or ""
        approval = self.correlate(destination, raw_text, message_id)

        text = raw_text
        if self._channel == Channel.EMAIL:
            text = clean_email_body(text)
        classification = classify(_KEY_PATTERN.sub(" ", text.upper()).lower())
        logger.info(
            "Reply from %s -> %s/%s (approval %s)",
            destination,
            classification.intent.value,
            classification.confidence.value,
            approval.id if approval else None,
        )
        return InboundReply(approval=approval, classification=classification, text=text)

    def resolve(
        self, approval: PendingApproval, resolution: Resolution, at: datetime | None = None
    ) -> bool:
        """Compare-and-swap the approval to resolved. True only for the first caller."""
        return self._store.resolve_pending_approval(approval.id, resolution, at or utcnow())

    def expire_stale(self, now: datetime | None = None) -> list[PendingApproval]:
        """Resolve every overdue approval as expired; return the ones this call won."""
        now = now or utcnow()
        expired = []
        for approval in self._store.expired_unresolved_approvals(now):
            if self.resolve(approval, Resolution.EXPIRED, now):
                expired.append(approval)
        if expired:
            logger.info("Expired %d pending approval(s)", len(expired))
        return expired
