"""Notification port — abstract interface for sending messages to people.

Core modules depend on this protocol, never on a specific messaging provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class NotificationError(Exception):
    """Raised when a message could not be handed to the transport."""


@dataclass
class OutgoingMessage:
    subject: str
    body: str


class NotificationPort(Protocol):
    """Abstract notification interface used by core modules."""

    async def send(self, destination: str, message: OutgoingMessage) -> str:
        """Send a message and return the transport's message id."""
        ...
