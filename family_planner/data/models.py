"""
Family Event Planner — Data Models.

Events, approvals and registration attempts persist in SQLite so the
approval pipeline survives restarts. Events are never deleted; every status
change is appended to an audit history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class EventStatus(str, Enum):
    DISCOVERED = "discovered"
    FILTERED = "filtered"
    CONFLICT_CHECKED = "conflict_checked"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REGISTERING = "registering"
    REGISTERED = "registered"
    MANUAL_REQUIRED = "manual_required"
    PAYMENT_BLOCKED = "payment_blocked"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    EventStatus.REGISTERED,
    EventStatus.MANUAL_REQUIRED,
    EventStatus.REJECTED,
    EventStatus.PAYMENT_BLOCKED,
    EventStatus.EXPIRED,
    EventStatus.CANCELLED,
})

# Statuses a fresh discovery cycle may re-drive
REDRIVABLE_STATUSES = frozenset({
    EventStatus.DISCOVERED,
    EventStatus.FILTERED,
    EventStatus.CONFLICT_CHECKED,
})


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class Resolution(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    EXPIRED = "expired"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PAYMENT_BLOCKED = "payment_blocked"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass
class Event:
    """A family event discovered from an external source.

    Identity for dedup is (source, source_id); `id` is the internal row id.
    """

    id: int
    source: str                        # e.g. "sf-library"
    source_id: str                     # canonical external id at the source
    title: str
    start: datetime
    location: str = ""
    cost: float | None = None          # estimated cost in dollars, None = unknown
    age_min: int | None = None
    age_max: int | None = None
    registration_url: str = ""
    description: str = ""
    end: datetime | None = None
    status: EventStatus = EventStatus.DISCOVERED
    conflict_summary: dict | None = None       # most recent ConflictVerdict, as dict
    registration_result: dict | None = None
    filter_reason: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_free(self) -> bool:
        return self.cost is not None and self.cost == 0


@dataclass
class StatusChange:
    """One row of an event's append-only status history."""

    event_id: int
    from_status: str | None
    to_status: str
    reason: str
    created_at: str


@dataclass
class PendingApproval:
    """One outstanding yes/no question sent to a human."""

    id: int
    event_id: int
    channel: Channel
    destination: str
    correlation_key: str             # short token included in the message, e.g. "EV7K2Q"
    created_at: datetime
    expires_at: datetime
    message_id: str | None = None    # transport id (Twilio SID / Gmail message id)
    resolved: bool = False
    resolution: Resolution | None = None
    resolved_at: datetime | None = None


@dataclass
class CalendarEntry:
    """An existing calendar entry returned by a calendar account."""

    id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    account_id: str = ""


@dataclass
class ConflictVerdict:
    """Result of checking an event window against all calendar accounts."""

    blocking: bool = False
    warning: bool = False
    conflicts: dict[str, list[CalendarEntry]] = field(default_factory=dict)
    accessible: dict[str, bool] = field(default_factory=dict)
    system_warnings: list[str] = field(default_factory=list)

    @property
    def no_verdict(self) -> bool:
        """True when no calendar could be reached at all."""
        return bool(self.accessible) and not any(self.accessible.values())

    def to_dict(self) -> dict:
        return {
            "blocking": self.blocking,
            "warning": self.warning,
            "accessible": dict(self.accessible),
            "conflicts": {
                account: [
                    {
                        "id": e.id,
                        "title": e.title,
                        "start": e.start.isoformat(),
                        "end": e.end.isoformat(),
                        "all_day": e.all_day,
                    }
                    for e in entries
                ]
                for account, entries in self.conflicts.items()
            },
            "system_warnings": list(self.system_warnings),
        }


@dataclass
class RegistrationAttempt:
    """One venue adapter invocation for an event."""

    event_id: int
    adapter_id: str
    attempt_number: int
    outcome: AttemptOutcome
    evidence: str | None = None          # screenshot path
    detail: str = ""
    confirmation_number: str | None = None
    created_at: str = ""
    id: int | None = None


@dataclass
class Child:
    name: str
    birthdate: date

    def age_on(self, on: date) -> int:
        years = on.year - self.birthdate.year
        if (on.month, on.day) < (self.birthdate.month, self.birthdate.day):
            years -= 1
        return years


@dataclass
class FamilyProfile:
    """Family details used to fill registration forms."""

    parent1_name: str
    parent1_email: str
    phone: str
    parent2_name: str = ""
    parent2_email: str = ""
    children: list[Child] = field(default_factory=list)

    @property
    def first_name(self) -> str:
        return self.parent1_name.split(" ")[0] if self.parent1_name else ""

    @property
    def last_name(self) -> str:
        parts = self.parent1_name.split(" ", 1)
        return parts[1] if len(parts) > 1 else ""

    def child_ages(self, on: date | None = None) -> list[int]:
        on = on or date.today()
        return [c.age_on(on) for c in self.children]


@dataclass
class ManualFallback:
    """What the family gets when automation cannot finish a registration."""

    event_id: int
    reason: str
    registration_url: str
    calendar_url: str
    message: str
