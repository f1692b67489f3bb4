"""Notification adapter factory — creates the notifier for a channel."""

from __future__ import annotations

from family_planner.config import settings
from family_planner.ports.notification_port import NotificationPort


def create_notifier(channel: str) -> NotificationPort:
    """Return the notifier for "sms" (Twilio) or "email" (Gmail)."""
    channel = channel.lower()

    if channel == "sms":
        from family_planner.adapters.twilio_sms import TwilioSmsNotifier

        return TwilioSmsNotifier(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_FROM_NUMBER,
        )

    if channel == "email":
        from family_planner.adapters.gmail_notifier import GmailNotifier

        return GmailNotifier(sender=settings.GMAIL_SENDER)

    raise ValueError(f"Unknown notification channel: {channel!r}")
