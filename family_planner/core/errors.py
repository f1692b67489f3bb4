"""Pipeline error taxonomy.

Port-level errors (CalendarError, NotificationError) live next to their
ports; these are the errors the core pipeline raises and handles.
"""

from __future__ import annotations


class PersistenceError(Exception):
    """Raised when the event store cannot be read or written.

    Fatal for the event being processed, never for the whole worker pool.
    """


class InvalidTransitionError(Exception):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, event_id: int, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Event {event_id}: transition {from_status} -> {to_status} not allowed"
        )
        self.event_id = event_id
        self.from_status = from_status
        self.to_status = to_status


class PaymentGuardViolation(Exception):
    """Raised when an automated step would touch payment data. Always terminal."""


class TransientRegistrationError(Exception):
    """A registration step failed in a way that is worth retrying."""


class TerminalRegistrationError(Exception):
    """A registration step failed in a way retrying cannot fix."""


class AlreadyRegisteredError(TerminalRegistrationError):
    """The venue reports the family is already registered."""


class RegistrationCancelled(Exception):
    """The event left the registering state while automation was running."""
