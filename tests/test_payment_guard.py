"""Tests for family_planner.core.payment_guard — pre-submit payment detection."""

import logging

import pytest

from family_planner.core.errors import PaymentGuardViolation
from family_planner.core.payment_guard import (
    FormField,
    GuardVerdict,
    PageSnapshot,
    PaymentGuard,
)


def _free_page(**overrides):
    fields = dict(
        url="https://sfpl.org/events/123/register",
        text="Register for Toddler Story Time. Free! Name, email and phone required.",
        fields=[
            FormField(name="first_name", type="text", label="First name"),
            FormField(name="email", type="email", label="Email"),
        ],
        buttons=["Register"],
        frames=[],
        declared_cost=0.0,
    )
    fields.update(overrides)
    return PageSnapshot(**fields)


@pytest.fixture
def guard():
    return PaymentGuard()


# ---------------------------------------------------------------------------
# Tests for inspect
# ---------------------------------------------------------------------------


class TestInspectAllows:
    def test_clean_free_page_allowed(self, guard):
        verdict = guard.inspect(_free_page())
        assert verdict == GuardVerdict(allowed=True)

    def test_zero_price_allowed(self, guard):
        verdict = guard.inspect(_free_page(text="Admission: $0.00, free for kids"))
        assert verdict.allowed is True

    def test_integer_zero_cost_allowed(self, guard):
        assert guard.inspect(_free_page(declared_cost=0)).allowed is True


class TestInspectCost:
    @pytest.mark.parametrize("cost", [15, 0.01, -1, None, "free", True])
    def test_unverified_cost_blocks(self, guard, cost):
        verdict = guard.inspect(_free_page(declared_cost=cost))
        assert verdict.allowed is False
        assert "cost" in verdict.reason

    def test_cost_logged_critical(self, guard, caplog):
        with caplog.at_level(logging.CRITICAL, logger="family_planner.core.payment_guard"):
            guard.inspect(_free_page(declared_cost=15), event_id=7)
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


class TestInspectFields:
    @pytest.mark.parametrize(
        "field",
        [
            FormField(name="card_number"),
            FormField(name="cvv"),
            FormField(id="cc-exp", autocomplete="cc-exp"),
            FormField(name="x1", autocomplete="cc-number"),
            FormField(name="billing_zip"),
            FormField(name="f3", label="Expiration date"),
            FormField(name="payment_token"),
        ],
    )
    def test_payment_fields_block(self, guard, field):
        page = _free_page(fields=[FormField(name="email", type="email"), field])
        verdict = guard.inspect(page)
        assert verdict.allowed is False
        assert any("payment field" in s for s in verdict.signals)

    @pytest.mark.parametrize(
        "src",
        [
            "https://js.stripe.com/v3/elements-inner-card.html",
            "https://www.paypal.com/smart/buttons",
            "https://assets.braintreegateway.com/hosted-fields",
            "https://web.squarecdn.com/v1/square.com/pay",
        ],
    )
    def test_payment_frames_block(self, guard, src):
        verdict = guard.inspect(_free_page(frames=[src]))
        assert verdict.allowed is False


class TestInspectText:
    @pytest.mark.parametrize("text", ["Enter your credit card", "Proceed to checkout", "Billing address"])
    def test_keywords_block(self, guard, text):
        assert guard.inspect(_free_page(text=text)).allowed is False

    def test_payment_button_blocks(self, guard):
        verdict = guard.inspect(_free_page(buttons=["Pay now"]))
        assert verdict.allowed is False
        assert any("button" in s for s in verdict.signals)

    def test_price_on_page_blocks(self, guard):
        verdict = guard.inspect(_free_page(text="Materials fee $12 per child"))
        assert verdict.allowed is False
        assert "price on page: $12.00" in verdict.signals

    def test_multiple_signals_reported(self, guard):
        verdict = guard.inspect(
            _free_page(declared_cost=10, text="checkout", fields=[FormField(name="cvv")])
        )
        assert len(verdict.signals) >= 3


# ---------------------------------------------------------------------------
# Tests for guard_form_value
# ---------------------------------------------------------------------------


class TestGuardFormValue:
    @pytest.mark.parametrize("name", ["card", "CreditCardNumber", "cvv", "ssn", "bank_account", "routing"])
    def test_sensitive_names_refused(self, guard, name):
        with pytest.raises(PaymentGuardViolation):
            guard.guard_form_value(name)

    @pytest.mark.parametrize("name", ["first_name", "email", "phone", "child_age"])
    def test_ordinary_names_allowed(self, guard, name):
        guard.guard_form_value(name)


# ---------------------------------------------------------------------------
# Tests for violation log
# ---------------------------------------------------------------------------


class TestViolationSummary:
    def test_counts_by_type(self, guard):
        guard.inspect(_free_page(declared_cost=5))
        with pytest.raises(PaymentGuardViolation):
            guard.guard_form_value("cvv")
        summary = guard.violation_summary()
        assert summary["total"] == 2
        assert summary["by_type"] == {"PAYMENT_PAGE": 1, "SENSITIVE_FIELD": 1}

    def test_log_is_bounded(self, guard):
        for _ in range(150):
            guard.inspect(_free_page(declared_cost=5))
        summary = guard.violation_summary()
        assert summary["total"] == 100
        assert len(summary["recent"]) == 10

    def test_clear(self, guard):
        guard.inspect(_free_page(declared_cost=5))
        assert guard.clear_violations() == 1
        assert guard.violation_summary()["total"] == 0

    def test_allowed_page_not_logged(self, guard):
        guard.inspect(_free_page())
        assert guard.violation_summary()["total"] == 0
