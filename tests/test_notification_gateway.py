"""Tests for family_planner.core.notification_gateway — proposals, replies, expiry."""

from datetime import timedelta

import pytest

from family_planner.core.notification_gateway import (
    NotificationGateway,
    format_cost,
    new_correlation_key,
)
from family_planner.core.response_classifier import Intent
from family_planner.core.timeutil import utcnow
from family_planner.data.models import CalendarEntry, Channel, ConflictVerdict, Resolution
from family_planner.ports.notification_port import OutgoingMessage

from conftest import FakeNotifier

PHONE = "+14155550100"


@pytest.fixture
def gateway(store, notifier):
    return NotificationGateway(store, notifier, Channel.SMS, PHONE, timeout_hours=24)


# ---------------------------------------------------------------------------
# Tests for helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_correlation_key_shape(self):
        key = new_correlation_key()
        assert key.startswith("EV")
        assert len(key) == 6
        assert not set(key[2:]) & set("01IOL")

    @pytest.mark.parametrize(
        "cost, expected", [(None, "Cost unknown"), (0, "Free"), (0.0, "Free"), (15, "$15.00")]
    )
    def test_format_cost(self, cost, expected):
        assert format_cost(cost) == expected


# ---------------------------------------------------------------------------
# Tests for format_proposal
# ---------------------------------------------------------------------------


class TestFormatProposal:
    def test_free_event(self, gateway, make_event):
        event = make_event(age_min=2, age_max=5)
        msg = gateway.format_proposal(event, "EVAB12")
        assert "New event: Toddler Story Time" in msg.body
        assert "Free" in msg.body
        assert "Ages 2-5" in msg.body
        assert "Reply YES to book or NO to skip." in msg.body
        assert msg.body.endswith("Ref EVAB12")

    def test_paid_event_offers_link(self, gateway, make_event):
        msg = gateway.format_proposal(make_event(cost=15.0), "EVAB12")
        assert "$15.00" in msg.body
        assert "registration link" in msg.body

    def test_warnings_shown(self, gateway, make_event, future_start):
        verdict = ConflictVerdict(
            warning=True,
            conflicts={
                "personal": [
                    CalendarEntry(id="1", title="Dentist", start=future_start, end=future_start)
                ]
            },
            system_warnings=["Calendar family could not be checked"],
        )
        msg = gateway.format_proposal(make_event(), "EVAB12", verdict)
        assert "Heads up: overlaps 'Dentist' (personal)" in msg.body
        assert "Note: Calendar family could not be checked" in msg.body

    def test_email_includes_link(self, store, notifier, make_event):
        gateway = NotificationGateway(store, notifier, Channel.EMAIL, "parents@example.com")
        msg = gateway.format_proposal(make_event(), "EVAB12")
        assert "Details: https://sfpl.org/events/123" in msg.body


# ---------------------------------------------------------------------------
# Tests for propose
# ---------------------------------------------------------------------------


class TestPropose:
    @pytest.mark.asyncio
    async def test_sends_and_records(self, gateway, store, notifier, make_event):
        event = make_event()
        approval = await gateway.propose(event)

        assert approval.message_id == "SM0001"
        assert notifier.sent[0][0] == PHONE
        assert approval.correlation_key in notifier.sent[0][1].body
        stored = store.unresolved_approval_for_event(event.id)
        assert stored.id == approval.id
        assert stored.expires_at - stored.created_at == timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_reuses_open_approval(self, gateway, notifier, make_event):
        event = make_event()
        first = await gateway.propose(event)
        second = await gateway.propose(event)
        assert second.id == first.id
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_send_failure_discards_reservation(self, store, make_event):
        gateway = NotificationGateway(store, FakeNotifier(fail=True), Channel.SMS, PHONE)
        event = make_event()
        assert await gateway.propose(event) is None
        assert store.unresolved_approval_for_event(event.id) is None


# ---------------------------------------------------------------------------
# Tests for correlate / interpret_reply
# ---------------------------------------------------------------------------


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_by_message_id(self, gateway, make_event):
        approval = await gateway.propose(make_event())
        await gateway.propose(make_event())
        found = gateway.correlate(PHONE, "yes", message_id="SM0001")
        assert found.id == approval.id

    @pytest.mark.asyncio
    async def test_by_ref_token(self, gateway, make_event):
        first = await gateway.propose(make_event())
        await gateway.propose(make_event())
        found = gateway.correlate(PHONE, f"yes {first.correlation_key.lower()}")
        assert found.id == first.id

    @pytest.mark.asyncio
    async def test_falls_back_to_latest_for_sender(self, gateway, make_event):
        await gateway.propose(make_event())
        second = await gateway.propose(make_event())
        assert gateway.correlate(PHONE, "yes").id == second.id

    @pytest.mark.asyncio
    async def test_prefers_open_approval_for_sender(self, gateway, make_event):
        first = await gateway.propose(make_event())
        second = await gateway.propose(make_event())
        gateway.resolve(second, Resolution.APPROVE)

        reply = gateway.interpret_reply(PHONE, "yes")

        assert reply.approval.id == first.id
        assert reply.classification.intent == Intent.APPROVE

    @pytest.mark.asyncio
    async def test_duplicate_falls_back_to_resolved(self, gateway, make_event):
        first = await gateway.propose(make_event())
        second = await gateway.propose(make_event())
        gateway.resolve(first, Resolution.APPROVE)
        gateway.resolve(second, Resolution.APPROVE)
        assert gateway.correlate(PHONE, "yes").id == second.id

    def test_unknown_sender(self, gateway):
        assert gateway.correlate("+19999999999", "yes") is None

    @pytest.mark.asyncio
    async def test_interpret_strips_ref_before_classifying(self, gateway, make_event):
        approval = await gateway.propose(make_event())
        reply = gateway.interpret_reply(PHONE, f"Yes {approval.correlation_key}")
        assert reply.approval.id == approval.id
        assert reply.classification.intent == Intent.APPROVE

    @pytest.mark.asyncio
    async def test_interpret_email_cleans_quotes(self, store, notifier, make_event):
        gateway = NotificationGateway(store, notifier, Channel.EMAIL, "parents@example.com")
        approval = await gateway.propose(make_event())
        body = "No thanks\n\nOn Mon someone wrote:\n> Reply YES to book"
        reply = gateway.interpret_reply("parents@example.com", body, message_id=approval.message_id)
        assert reply.approval.id == approval.id
        assert reply.classification.intent == Intent.REJECT

    @pytest.mark.asyncio
    async def test_email_quoted_ref_picks_older_proposal(self, store, notifier, make_event):
        gateway = NotificationGateway(store, notifier, Channel.EMAIL, "parents@example.com")
        first = await gateway.propose(make_event(title="First"))
        second = await gateway.propose(make_event(title="Second"))
        body = (
            "Yes please\n\nOn Mon, Planner wrote:\n"
            f"> New event: First\n> Reply YES to book or NO to skip.\n> Ref {first.correlation_key}"
        )

        reply = gateway.interpret_reply("parents@example.com", body)

        assert reply.approval.id == first.id != second.id
        assert reply.classification.intent == Intent.APPROVE
        assert reply.text == "Yes please"

    @pytest.mark.asyncio
    async def test_ref_in_subject(self, gateway, notifier, make_event):
        approval = await gateway.propose(make_event())
        assert notifier.sent[0][1].subject.endswith(f"Ref {approval.correlation_key}")


# ---------------------------------------------------------------------------
# Tests for resolve / expire_stale
# ---------------------------------------------------------------------------


class TestResolveAndExpire:
    @pytest.mark.asyncio
    async def test_resolve_once(self, gateway, make_event):
        approval = await gateway.propose(make_event())
        assert gateway.resolve(approval, Resolution.APPROVE) is True
        assert gateway.resolve(approval, Resolution.REJECT) is False

    @pytest.mark.asyncio
    async def test_expire_stale(self, gateway, store, make_event):
        approval = await gateway.propose(make_event())
        later = utcnow() + timedelta(hours=25)
        expired = gateway.expire_stale(later)
        assert [a.id for a in expired] == [approval.id]
        assert store.load_pending_approval(approval.id).resolution == Resolution.EXPIRED
        assert gateway.expire_stale(later) == []

    @pytest.mark.asyncio
    async def test_not_yet_expired(self, gateway, make_event):
        await gateway.propose(make_event())
        assert gateway.expire_stale(utcnow() + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_resolved_approval_does_not_expire(self, gateway, make_event):
        approval = await gateway.propose(make_event())
        gateway.resolve(approval, Resolution.APPROVE)
        assert gateway.expire_stale(utcnow() + timedelta(hours=25)) == []


# ---------------------------------------------------------------------------
# Tests for outbound notices
# ---------------------------------------------------------------------------


class TestNotices:
    @pytest.mark.asyncio
    async def test_reprompt_keeps_pending(self, gateway, store, notifier, make_event):
        event = make_event()
        approval = await gateway.propose(event)
        await gateway.reprompt(approval, event)
        assert len(notifier.sent) == 2
        assert approval.correlation_key in notifier.sent[1][1].body
        assert store.unresolved_approval_for_event(event.id) is not None

    @pytest.mark.asyncio
    async def test_notify_family_reports_failure(self, store):
        gateway = NotificationGateway(store, FakeNotifier(fail=True), Channel.SMS, PHONE)
        assert await gateway.notify_family(OutgoingMessage("s", "b")) is False

    @pytest.mark.asyncio
    async def test_operator_alert_uses_operator_channel(self, store, notifier):
        operator = FakeNotifier()
        gateway = NotificationGateway(
            store, notifier, Channel.SMS, PHONE,
            operator_notifier=operator, operator_destination="ops@example.com",
        )
        assert await gateway.alert_operator(OutgoingMessage("Payment guard", "blocked")) is True
        assert operator.sent[0][0] == "ops@example.com"
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_operator_alert_without_destination(self, gateway, notifier):
        assert await gateway.alert_operator(OutgoingMessage("s", "b")) is False
        assert notifier.sent == []
