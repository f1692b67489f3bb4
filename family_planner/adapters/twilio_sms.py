"""Twilio SMS adapter — implements NotificationPort over the Twilio REST API."""

from __future__ import annotations

import logging

import httpx

from family_planner.ports.notification_port import NotificationError, OutgoingMessage

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
_SMS_LIMIT = 1600


class TwilioSmsNotifier:
    """Sends SMS through Twilio. The returned message id is the Twilio SID."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._client = client
        self._timeout = timeout

    async def send(self, destination: str, message: OutgoingMessage) -> str:
        if not destination.startswith("+"):
            raise NotificationError(f"Phone number must be in E.164 format: {destination!r}")

        data = {"To": destination, "From": self._from_number, "Body": message.body[:_SMS_LIMIT]}
        url = f"{TWILIO_API_BASE}/Accounts/{self._account_sid}/Messages.json"

        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, auth=(self._account_sid, self._auth_token))
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(
                        url, data=data, auth=(self._account_sid, self._auth_token)
                    )
        except httpx.HTTPError as exc:
            logger.error("Twilio request failed for %s: %s", destination, exc)
            raise NotificationError(f"Twilio request failed: {exc}") from exc

        if response.status_code not in (200, 201):
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.error("Twilio rejected SMS to %s (%d): %s", destination, response.status_code, detail)
            raise NotificationError(f"Twilio error {response.status_code}: {detail}")

        sid = response.json().get("sid", "")
        logger.info("SMS sent to %s (sid %s)", destination, sid)
        return sid
