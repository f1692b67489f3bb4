"""San Francisco Public Library adapter."""

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

_THIRD_PARTY = '[src*="eventbrite"], [href*="eventbrite"]'


@register_adapter
class LibraryAdapter(GenericFormAdapter):
    """Library programs: simple direct forms, or an Eventbrite hand-off we refuse."""

    id = "sf-library"
    domains = ("sfpl.org",)

    async def fill(self, page: Page, profile: FamilyProfile) -> None:
        if await page.locator(_THIRD_PARTY).count() > 0:
            raise TerminalRegistrationError("Event uses third-party registration (Eventbrite)")
        if await page.locator("form").count() == 0:
            raise TerminalRegistrationError("No registration form; library events are often drop-in")
        await super().fill(page, profile)
