"""Gmail adapter — implements NotificationPort with the Gmail API.

The Google API client is synchronous, so sends run in a worker thread.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from email.message import EmailMessage
from email.utils import make_msgid

from family_planner.integrations.google_auth import get_gmail_service
from family_planner.ports.notification_port import NotificationError, OutgoingMessage

logger = logging.getLogger(__name__)


def new_message_id(sender: str) -> str:
    """RFC 5322 Message-ID, e.g. <1706...@example.com>. Replies quote it in In-Reply-To."""
    domain = sender.rpartition("@")[2] if "@" in sender else None
    return make_msgid(domain=domain)


def build_mime(sender: str, destination: str, message: OutgoingMessage, message_id: str = "") -> dict:
    """Gmail API body: {"raw": base64url(RFC 2822 message)}."""
    mime = EmailMessage()
    mime["To"] = destination
    if sender and sender != "me":
        mime["From"] = sender
    mime["Subject"] = message.subject
    if message_id:
        mime["Message-ID"] = message_id
    mime.set_content(message.body)
    raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")
    return {"raw": raw}


class GmailNotifier:
    """Sends email through Gmail.

    The returned message id is the RFC Message-ID header set on the email,
    not Gmail's internal id, so it matches the In-Reply-To of a reply.
    """

    def __init__(self, sender: str = "me", service=None) -> None:
        self._sender = sender
        self._service = service

    def _send_sync(self, body: dict) -> dict:
        if self._service is None:
            self._service = get_gmail_service()
        return self._service.users().messages().send(userId="me", body=body).execute()

    async def send(self, destination: str, message: OutgoingMessage) -> str:
        message_id = new_message_id(self._sender)
        body = build_mime(self._sender, destination, message, message_id)
        try:
            sent = await asyncio.to_thread(self._send_sync, body)
        except Exception as exc:
            logger.error("Gmail send to %s failed: %s", destination, exc)
            raise NotificationError(f"Failed to send email: {exc}") from exc

        logger.info(
            "Email sent to %s: '%s' (%s, gmail id %s)",
            destination, message.subject, message_id, sent.get("id", ""),
        )
        return message_id
