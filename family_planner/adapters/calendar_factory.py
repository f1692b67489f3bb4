"""Calendar adapter factory — one CalendarPort per configured account."""

from __future__ import annotations

from typing import TYPE_CHECKING

from family_planner.config import settings
from family_planner.ports.calendar_port import CalendarPort

if TYPE_CHECKING:
    from family_planner.config import CalendarAccount


def create_calendar_adapter(provider: str) -> CalendarPort:
    """Return the calendar adapter for a provider name ("google" or "caldav")."""
    provider = provider.lower()

    if provider == "google":
        from family_planner.adapters.google_calendar import GoogleCalendarAdapter

        return GoogleCalendarAdapter()

    if provider == "caldav":
        from family_planner.adapters.caldav_calendar import CalDAVCalendarAdapter

        return CalDAVCalendarAdapter(
            url=settings.CALDAV_URL,
            username=settings.CALDAV_USERNAME,
            password=settings.CALDAV_PASSWORD,
        )

    raise ValueError(f"Unknown calendar provider: {provider!r}")


def create_calendar_adapters(accounts: list[CalendarAccount]) -> dict[str, CalendarPort]:
    """Map account_id -> adapter. Accounts on the same provider share one adapter."""
    by_provider: dict[str, CalendarPort] = {}
    adapters: dict[str, CalendarPort] = {}
    for account in accounts:
        if account.provider not in by_provider:
            by_provider[account.provider] = create_calendar_adapter(account.provider)
        adapters[account.account_id] = by_provider[account.provider]
    return adapters
