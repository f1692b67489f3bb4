"""
Family Event Planner — Background Scheduler.

A periodic tick that expires unanswered approvals. Expiry uses a
compare-and-swap on the approval, so a reply racing the sweep is safe:
whichever resolves first wins and the other is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable

if TYPE_CHECKING:
    from family_planner.core.lifecycle import EventLifecycleManager
    from family_planner.ports.discovery_port import DiscoveryPort

logger = logging.getLogger(__name__)


async def sweep_expired_approvals(
    lifecycle: EventLifecycleManager, now: datetime | None = None
) -> int:
    """Run one expiry sweep. Errors are logged, never raised."""
    try:
        expired = await lifecycle.tick(now)
    except Exception as exc:
        logger.error("Expiry sweep failed: %s", exc)
        return 0
    if expired:
        logger.info("Expiry sweep: %d event(s) expired", expired)
    return expired


async def run_discovery(lifecycle: EventLifecycleManager, sources: list[DiscoveryPort]) -> int:
    """Pull from every discovery source and run one pipeline cycle."""
    discovered = []
    for source in sources:
        try:
            discovered.extend(await source.discover())
        except Exception as exc:
            logger.error("Discovery source %s failed: %s", type(source).__name__, exc)
    if not discovered:
        return 0
    results = await lifecycle.run_cycle(discovered)
    return len(results)


async def run_scheduler(
    lifecycle: EventLifecycleManager,
    interval_seconds: float,
    stop_event: asyncio.Event,
    sources: list[DiscoveryPort] | None = None,
    on_tick: Callable[[], Awaitable[None]] | None = None,
) -> None:
    """Tick every interval until stop_event is set."""
    logger.info("Scheduler started (every %ss)", interval_seconds)
    while not stop_event.is_set():
        await sweep_expired_approvals(lifecycle)
        if sources:
            try:
                await run_discovery(lifecycle, sources)
            except Exception as exc:
                logger.error("Discovery cycle failed: %s", exc)
        if on_tick is not None:
            await on_tick()
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("Scheduler stopped")
