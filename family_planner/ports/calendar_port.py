"""Calendar port — abstract interface for reading calendar accounts.

The conflict checker depends on this protocol, never on a specific provider.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol


class CalendarError(Exception):
    """Raised when any calendar provider operation fails."""


class CalendarPort(Protocol):
    """Read-only calendar interface used by the conflict checker.

    Each returned dict has keys: id, title, start, end (ISO strings; date-only
    for all-day entries) and all_day (bool).
    """

    async def list_events(
        self, account_id: str, start: datetime, end: datetime
    ) -> list[dict]: ...
