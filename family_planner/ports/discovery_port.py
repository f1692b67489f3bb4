"""Discovery port — where events enter the pipeline.

Scrapers live outside this package; they hand the core DiscoveredEvent
records and the core dedups them by (source, source_id).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass
class DiscoveredEvent:
    source: str
    source_id: str
    title: str
    start: datetime
    end: datetime | None = None
    location: str = ""
    cost: float | None = None
    age_min: int | None = None
    age_max: int | None = None
    registration_url: str = ""
    description: str = ""


class DiscoveryPort(Protocol):
    async def discover(self) -> list[DiscoveredEvent]: ...
