"""Venue adapter registry — picks the adapter for an event.

Lookup order: the event's source id, then the registration URL's domain,
then the generic form adapter.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

# Imported for their @register_adapter side effect
from family_planner.adapters.venues import cal_academy, generic, sf_library  # noqa: F401
from family_planner.adapters.venues.base import ADAPTERS

if TYPE_CHECKING:
    from family_planner.adapters.venues.base import BaseVenueAdapter
    from family_planner.core.payment_guard import PaymentGuard
    from family_planner.data.models import Event

logger = logging.getLogger(__name__)

FALLBACK_ADAPTER_ID = "generic"


class AdapterRegistry:
    def __init__(self, guard: PaymentGuard) -> None:
        self._adapters: dict[str, BaseVenueAdapter] = {
            adapter_id: cls(guard) for adapter_id, cls in ADAPTERS.items()
        }

    @property
    def ids(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, adapter_id: str) -> BaseVenueAdapter | None:
        return self._adapters.get(adapter_id)

    def for_event(self, event: Event) -> BaseVenueAdapter:
        adapter = self._adapters.get(event.source)
        if adapter is not None:
            return adapter

        for candidate in self._adapters.values():
            if candidate.can_handle(event.registration_url):
                logger.debug("Adapter %s matched %s by domain", candidate.id, event.registration_url)
                return candidate

        return self._adapters[FALLBACK_ADAPTER_ID]
