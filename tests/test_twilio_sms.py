"""Tests for the Twilio SMS notifier.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from family_planner.adapters.twilio_sms import TwilioSmsNotifier
from family_planner.ports.notification_port import NotificationError, OutgoingMessage

MESSAGE = OutgoingMessage(subject="Family event", body="New event: Story Time\nRef EVAB12")


def _notifier(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioSmsNotifier("AC123", "secret", "+14155550000", client=client)


class TestSend:
    @pytest.mark.asyncio
    async def test_posts_form_and_returns_sid(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(201, json={"sid": "SM42"})

        sid = await _notifier(handler).send("+14155550100", MESSAGE)

        assert sid == "SM42"
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert seen["form"]["To"] == ["+14155550100"]
        assert seen["form"]["From"] == ["+14155550000"]
        assert seen["form"]["Body"] == [MESSAGE.body]
        assert seen["auth"] == "Basic " + base64.b64encode(b"AC123:secret").decode()

    @pytest.mark.asyncio
    async def test_rejected_by_twilio(self):
        def handler(request):
            return httpx.Response(400, json={"message": "Invalid 'To' Phone Number"})

        with pytest.raises(NotificationError, match="Invalid 'To'"):
            await _notifier(handler).send("+14155550100", MESSAGE)

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NotificationError, match="request failed"):
            await _notifier(handler).send("+14155550100", MESSAGE)

    @pytest.mark.asyncio
    async def test_requires_e164(self):
        def handler(request):
            raise AssertionError("should not be called")

        with pytest.raises(NotificationError, match="E.164"):
            await _notifier(handler).send("415-555-0100", MESSAGE)
