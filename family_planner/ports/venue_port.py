"""Venue adapter port — per-venue registration automation.

Adapters are looked up by id in the registry
(`family_planner.adapters.venues.registry`).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from playwright.async_api import Page

    from family_planner.data.models import FamilyProfile


class VenueAdapter(Protocol):
    """Fills and submits one venue's registration form."""

    id: str

    def can_handle(self, url: str) -> bool: ...

    async def fill(self, page: Page, profile: FamilyProfile) -> None: ...

    async def submit(self, page: Page) -> dict:
        """Click submit and verify. Returns {"success": bool, "confirmation_number": str|None}."""
        ...
