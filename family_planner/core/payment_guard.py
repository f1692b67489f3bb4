"""
Family Event Planner — Payment Guard.

The last check before any automated submit. It looks at a snapshot of the
registration page and blocks if anything about it suggests money would change
hands. A block is final: there is no setting that skips this check and no
caller is allowed to submit after `allowed=False`.
"""

from __future__ import annotations

import logging
import re
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from family_planner.core.errors import PaymentGuardViolation

logger = logging.getLogger(__name__)

_MAX_VIOLATIONS = 100

PAYMENT_KEYWORDS = (
    "credit card", "debit card", "card number", "checkout", "billing",
    "pay now", "payment method", "payment information", "payment details",
    "cvv", "cvc", "security code", "expiration date", "expiry date",
    "visa", "mastercard", "american express", "amex", "paypal", "stripe",
    "purchase",
)

PAYMENT_PROVIDERS = (
    "stripe", "paypal", "braintree", "squareup", "square.com", "adyen",
    "authorize.net",
)

_PAYMENT_FIELD = re.compile(
    r"card|credit|cvv|cvc|csc|expir|exp[-_ ]?(date|month|year)|billing|iban|"
    r"routing|account.?number|payment",
    re.IGNORECASE,
)
_PAYMENT_BUTTON = re.compile(r"\b(pay|buy|purchase|checkout|check out)\b", re.IGNORECASE)
_SENSITIVE_NAME = re.compile(
    r"card|credit|payment|cvv|cvc|ssn|account|bank|routing|iban|billing",
    re.IGNORECASE,
)
_PRICE = re.compile(r"\$\s?(\d+(?:,\d{3})*(?:\.\d{2})?)")


@dataclass
class FormField:
    """One input/select/textarea on the page, as seen by the browser."""

    name: str = ""
    id: str = ""
    type: str = ""
    placeholder: str = ""
    autocomplete: str = ""
    label: str = ""

    def describe(self) -> str:
        return self.name or self.id or self.placeholder or self.label or self.type


@dataclass
class PageSnapshot:
    """What the guard needs to know about a page right before submit."""

    url: str
    text: str = ""
    fields: list[FormField] = field(default_factory=list)
    buttons: list[str] = field(default_factory=list)
    frames: list[str] = field(default_factory=list)      # iframe src URLs
    declared_cost: object = None                         # event cost as stored


@dataclass
class GuardVerdict:
    allowed: bool
    reason: str = ""
    signals: list[str] = field(default_factory=list)


def _cost_signal(cost: object) -> str | None:
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        return f"event cost is not a verified number ({cost!r})"
    if cost < 0:
        return f"event cost is negative ({cost})"
    if cost > 0:
        return f"event cost is ${cost:.2f}"
    return None


def _field_signals(fields: list[FormField]) -> list[str]:
    signals = []
    for f in fields:
        if f.autocomplete.lower().startswith("cc-"):
            signals.append(f"payment field: {f.describe()} (autocomplete={f.autocomplete})")
            continue
        haystack = " ".join((f.name, f.id, f.placeholder, f.label))
        if _PAYMENT_FIELD.search(haystack):
            signals.append(f"payment field: {f.describe()}")
    return signals


def _frame_signals(frames: list[str]) -> list[str]:
    signals = []
    for src in frames:
        lowered = src.lower()
        for provider in PAYMENT_PROVIDERS:
            if provider in lowered:
                signals.append(f"payment provider frame: {provider}")
                break
    return signals


def _text_signals(text: str, buttons: list[str]) -> list[str]:
    signals = []
    lowered = text.lower()
    for keyword in PAYMENT_KEYWORDS:
        if keyword in lowered:
            signals.append(f"payment keyword: {keyword!r}")
    for label in buttons:
        if _PAYMENT_BUTTON.search(label) or any(k in label.lower() for k in PAYMENT_KEYWORDS):
            signals.append(f"payment button: {label.strip()!r}")
    for match in _PRICE.finditer(text):
        amount = float(match.group(1).replace(",", ""))
        if amount > 0:
            signals.append(f"price on page: ${amount:.2f}")
            break
    return signals


class PaymentGuard:
    """Inspects page snapshots and form values; keeps a bounded violation log."""

    def __init__(self) -> None:
        self._violations: deque[dict] = deque(maxlen=_MAX_VIOLATIONS)

    def inspect(self, snapshot: PageSnapshot, event_id: int | None = None) -> GuardVerdict:
        signals: list[str] = []

        cost_signal = _cost_signal(snapshot.declared_cost)
        if cost_signal:
            logger.critical(
                "PAYMENT GUARD: event %s reached submit with %s (%s)",
                event_id, cost_signal, snapshot.url,
            )
            signals.append(cost_signal)

        signals.extend(_field_signals(snapshot.fields))
        signals.extend(_frame_signals(snapshot.frames))
        signals.extend(_text_signals(snapshot.text, snapshot.buttons))

        if not signals:
            return GuardVerdict(allowed=True)

        reason = signals[0]
        self._record("PAYMENT_PAGE", reason, event_id, signals)
        logger.critical(
            "PAYMENT GUARD BLOCK: event %s at %s: %s", event_id, snapshot.url, "; ".join(signals)
        )
        return GuardVerdict(allowed=False, reason=reason, signals=signals)

    def guard_form_value(self, field_name: str, event_id: int | None = None) -> None:
        """Raise PaymentGuardViolation if the field looks like card or bank data."""
        if _SENSITIVE_NAME.search(field_name or ""):
            message = f"Refusing to fill sensitive field: {field_name}"
            self._record("SENSITIVE_FIELD", message, event_id, [field_name])
            logger.critical("PAYMENT GUARD: %s (event %s)", message, event_id)
            raise PaymentGuardViolation(message)

    def _record(self, kind: str, message: str, event_id: int | None, details: list[str]) -> None:
        self._violations.append(
            {
                "type": kind,
                "message": message,
                "event_id": event_id,
                "details": list(details),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )

    def violation_summary(self) -> dict:
        """Counts by type plus the ten most recent violations."""
        violations = list(self._violations)
        return {
            "total": len(violations),
            "by_type": dict(Counter(v["type"] for v in violations)),
            "recent": violations[-10:],
        }

    def clear_violations(self) -> int:
        count = len(self._violations)
        self._violations.clear()
        logger.info("Cleared %d payment guard violations", count)
        return count
