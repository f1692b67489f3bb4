"""Venue adapter base — shared fill/submit/verify mechanics for registration forms.

Concrete adapters register themselves by id with `@register_adapter`; the
registry in `family_planner.adapters.venues.registry` looks them up.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from family_planner.core.errors import (
    AlreadyRegisteredError,
    TerminalRegistrationError,
)

if TYPE_CHECKING:
    from playwright.async_api import Page

    from family_planner.core.payment_guard import PaymentGuard
    from family_planner.data.models import FamilyProfile

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, type[BaseVenueAdapter]] = {}


def register_adapter(cls: type[BaseVenueAdapter]) -> type[BaseVenueAdapter]:
    """Class decorator: make an adapter available by its id."""
    ADAPTERS[cls.id] = cls
    return cls


SUBMIT_SELECTORS = (
    'button[type="submit"]',
    'input[type="submit"]',
    'button:has-text("Register")',
    'button:has-text("Sign Up")',
    'button:has-text("RSVP")',
    'button:has-text("Submit")',
    ".submit-btn",
    ".register-btn",
)

SUCCESS_SELECTORS = (
    ".success", ".confirmation", ".thank-you",
    '[class*="success"]', '[class*="confirmation"]',
    '[id*="success"]', '[id*="confirmation"]',
)

SUCCESS_TEXTS = (
    "thank you", "confirmation", "registered", "success", "we have received",
    "registration complete", "you are registered", "you're registered",
)

ALREADY_REGISTERED_TEXTS = (
    "already registered", "already signed up", "you have already registered",
)

_CONFIRMATION_PATTERNS = (
    re.compile(r"confirmation\s*(?:number|code|id|#)\s*:?\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"reference\s*(?:number|code|id|#)\s*:?\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"registration\s*(?:number|code|id|#)\s*:?\s*([A-Za-z0-9\-]+)", re.IGNORECASE),
    re.compile(r"\b(?:conf|ref|reg)\s*#\s*:?\s*([A-Za-z0-9\-]{6,})", re.IGNORECASE),
)


def extract_confirmation_number(text: str) -> str | None:
    """Find a confirmation/reference number in page text, if there is one."""
    if not text:
        return None
    for pattern in _CONFIRMATION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


class BaseVenueAdapter:
    """Base registration adapter. Subclasses implement `fill`."""

    id = "base"
    domains: tuple[str, ...] = ()

    def __init__(self, guard: PaymentGuard) -> None:
        self._guard = guard

    def can_handle(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(host == d or host.endswith("." + d) for d in self.domains)

    def prepare_url(self, url: str) -> str:
        return url

    async def open(self, page: Page, url: str) -> None:
        url = self.prepare_url(url)
        logger.debug("[%s] Navigating to %s", self.id, url)
        await page.goto(url, wait_until="domcontentloaded")

    async def fill(self, page: Page, profile: FamilyProfile) -> None:
        raise NotImplementedError

    async def fill_field(self, page: Page, selector: str, value: str, field_name: str) -> bool:
        """Fill one field. The payment guard vets the field name first."""
        if not value:
            return False
        self._guard.guard_form_value(field_name)
        locator = page.locator(selector).first
        if await locator.count() == 0:
            return False
        await locator.fill(value)
        logger.debug("[%s] Filled %s", self.id, field_name)
        return True

    async def submit(self, page: Page) -> dict:
        """Click the first submit control and verify the outcome."""
        for selector in SUBMIT_SELECTORS:
            button = page.locator(selector).first
            if await button.count() == 0:
                continue
            await button.click()
            logger.debug("[%s] Clicked submit: %s", self.id, selector)
            await page.wait_for_load_state("domcontentloaded")
            return await self.verify(page)

        raise TerminalRegistrationError("No submit button found")

    async def verify(self, page: Page) -> dict:
        """Look for success markers. A submit that cannot be verified is not retried."""
        text = await page.inner_text("body")
        lowered = text.lower()

        if any(t in lowered for t in ALREADY_REGISTERED_TEXTS):
            raise AlreadyRegisteredError("Venue reports the family is already registered")

        for selector in SUCCESS_SELECTORS:
            element = page.locator(selector).first
            if await element.count() > 0:
                element_text = await element.inner_text()
                return {
                    "success": True,
                    "confirmation_number": extract_confirmation_number(element_text)
                    or extract_confirmation_number(text),
                }

        if any(t in lowered for t in SUCCESS_TEXTS):
            return {"success": True, "confirmation_number": extract_confirmation_number(text)}

        url = page.url.lower()
        if any(marker in url for marker in ("success", "confirmation", "thank")):
            return {"success": True, "confirmation_number": None}

        raise TerminalRegistrationError("Submitted, but no confirmation was shown")
