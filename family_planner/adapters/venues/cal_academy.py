"""California Academy of Sciences adapter."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from family_planner.adapters.venues.base import register_adapter
from family_planner.adapters.venues.generic import GenericFormAdapter
from family_planner.core.errors import TerminalRegistrationError

if TYPE_CHECKING:
    from playwright.async_api import Page

    from family_planner.data.models import FamilyProfile

logger = logging.getLogger(__name__)

_TICKET_LINKS = (
    'a[href*="ticket"], button:has-text("Buy Tickets"), '
    'a:has-text("Get Tickets"), a:has-text("Plan Your Visit")'
)
_DOUBLED_ORIGIN = "https://www.calacademy.orghttps://"


@register_adapter
class CalAcademyAdapter(GenericFormAdapter):
    """Most Academy programs come with general admission, which is a purchase."""

    id = "cal-academy"
    domains = ("calacademy.org",)

    def prepare_url(self, url: str) -> str:
        # Scraped links sometimes carry the site origin twice
        if _DOUBLED_ORIGIN in url:
            url = url.replace(_DOUBLED_ORIGIN, "https://")
        return url

    async def fill(self, page: Page, profile: FamilyProfile) -> None:
        has_form = await page.locator("form").count() > 0
        if not has_form and await page.locator(_TICKET_LINKS).count() > 0:
            raise TerminalRegistrationError("Requires a general admission ticket purchase")
        if not has_form:
            raise TerminalRegistrationError("No registration form found")
        await super().fill(page, profile)
