"""Generic form adapter — heuristic field detection for unknown venues."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from family_planner.adapters.playwright_browser import snapshot_page
from family_planner.adapters.venues.base import BaseVenueAdapter, register_adapter
from family_planner.core.errors import TerminalRegistrationError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from family_planner.core.payment_guard import FormField
    from family_planner.data.models import FamilyProfile

logger = logging.getLogger(__name__)

# Checked in order; the first match wins for a field
FIELD_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("first_name", re.compile(r"first.?name|fname|given.?name", re.IGNORECASE)),
    ("last_name", re.compile(r"last.?name|lname|surname|family.?name", re.IGNORECASE)),
    ("name", re.compile(r"^name$|full.?name|contact.?name|your.?name", re.IGNORECASE)),
    ("email", re.compile(r"e.?mail", re.IGNORECASE)),
    ("phone", re.compile(r"phone|telephone|mobile|cell", re.IGNORECASE)),
    ("children", re.compile(r"child|kid|participant|attendee", re.IGNORECASE)),
    ("age", re.compile(r"\bage\b|birth|dob", re.IGNORECASE)),
)

_FILLABLE_TYPES = {"", "text", "email", "tel", "textarea", "number"}


def classify_field(field: FormField) -> str | None:
    """Map a form field to a family-profile slot, or None."""
    if field.type and field.type not in _FILLABLE_TYPES:
        return None
    for text in (field.name, field.id, field.placeholder, field.label):
        for slot, pattern in FIELD_PATTERNS:
            if text and pattern.search(text.strip()):
                return slot
    if field.type == "email":
        return "email"
    if field.type == "tel":
        return "phone"
    return None


def detect_fields(fields: list[FormField]) -> dict[str, FormField]:
    """First field per slot, in page order."""
    detected: dict[str, FormField] = {}
    for field in fields:
        slot = classify_field(field)
        if slot and slot not in detected:
            detected[slot] = field
    return detected


def field_selector(field: FormField) -> str | None:
    if field.id:
        return f'[id="{field.id}"]'
    if field.name:
        return f'[name="{field.name}"]'
    return None


def profile_values(profile: FamilyProfile) -> dict[str, str]:
    ages = profile.child_ages()
    return {
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "name": profile.parent1_name,
        "email": profile.parent1_email,
        "phone": profile.phone,
        "children": ", ".join(
            f"{c.name} (age {age})" for c, age in zip(profile.children, ages)
        ),
        "age": str(ages[0]) if len(ages) == 1 else "",
    }


@register_adapter
class GenericFormAdapter(BaseVenueAdapter):
    """Fills whatever name/email/phone/children fields it can recognize."""

    id = "generic"

    async def fill(self, page: Page, profile: FamilyProfile) -> None:
        snapshot = await snapshot_page(page, declared_cost=None)
        detected = detect_fields(snapshot.fields)
        if not detected:
            raise TerminalRegistrationError("No registration form fields found")

        values = profile_values(profile)
        filled = 0
        for slot, field in detected.items():
            selector = field_selector(field)
            if selector is None:
                continue
            if await self.fill_field(page, selector, values.get(slot, ""), field.name or field.id):
                filled += 1

        if filled == 0:
            raise TerminalRegistrationError("No form fields could be filled")
        logger.info("[%s] Filled %d field(s)", self.id, filled)
