"""
Family Event Planner — Entry Point.

Single entry point: `python main.py` wires the pipeline from .env and runs
the scheduler until interrupted. Discovery sources and inbound reply
webhooks plug into the EventLifecycleManager built here.
"""

import asyncio
import logging
import signal

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from family_planner.adapters.calendar_factory import create_calendar_adapters
from family_planner.adapters.notifier_factory import create_notifier
from family_planner.adapters.playwright_browser import PlaywrightBrowser
from family_planner.adapters.venues.registry import AdapterRegistry
from family_planner.config import settings
from family_planner.core.conflict_checker import CalendarConflictChecker
from family_planner.core.lifecycle import EventLifecycleManager
from family_planner.core.notification_gateway import NotificationGateway
from family_planner.core.payment_guard import PaymentGuard
from family_planner.core.registration_orchestrator import RegistrationOrchestrator
from family_planner.core.scheduler import run_scheduler
from family_planner.data.db import EventStore
from family_planner.data.models import Channel, Child, FamilyProfile

logger = logging.getLogger(__name__)


def build_family_profile() -> FamilyProfile:
    return FamilyProfile(
        parent1_name=settings.FAMILY_PARENT1_NAME,
        parent1_email=settings.FAMILY_PARENT1_EMAIL,
        parent2_name=settings.FAMILY_PARENT2_NAME,
        parent2_email=settings.FAMILY_PARENT2_EMAIL,
        phone=settings.FAMILY_PHONE,
        children=[Child(name=c.name, birthdate=c.birthdate) for c in settings.FAMILY_CHILDREN],
    )


def build_pipeline(browser: PlaywrightBrowser) -> EventLifecycleManager:
    store = EventStore(settings.DATABASE_PATH)
    profile = build_family_profile()
    guard = PaymentGuard()

    checker = CalendarConflictChecker(
        accounts=settings.CALENDAR_ACCOUNTS,
        calendars=create_calendar_adapters(settings.CALENDAR_ACCOUNTS),
        buffer_minutes=settings.CONFLICT_BUFFER_MINUTES,
        timeout_seconds=settings.CALENDAR_QUERY_TIMEOUT_SECONDS,
        default_duration_minutes=settings.DEFAULT_EVENT_DURATION_MINUTES,
        tz_name=settings.TIMEZONE,
    )
    notifier = create_notifier(settings.APPROVAL_CHANNEL)
    operator_notifier = (
        notifier
        if settings.OPERATOR_ALERT_CHANNEL == settings.APPROVAL_CHANNEL
        else create_notifier(settings.OPERATOR_ALERT_CHANNEL)
    )
    gateway = NotificationGateway(
        store=store,
        notifier=notifier,
        channel=Channel(settings.APPROVAL_CHANNEL),
        destination=settings.approval_destination,
        timeout_hours=settings.APPROVAL_TIMEOUT_HOURS,
        operator_notifier=operator_notifier,
        operator_destination=settings.OPERATOR_ALERT_DESTINATION,
        tz_name=settings.TIMEZONE,
    )
    orchestrator = RegistrationOrchestrator(
        store=store,
        browser=browser,
        registry=AdapterRegistry(guard),
        guard=guard,
        profile=profile,
        max_attempts=settings.REGISTRATION_MAX_ATTEMPTS,
        backoff_seconds=settings.REGISTRATION_BACKOFF_SECONDS,
        backoff_max_seconds=settings.REGISTRATION_BACKOFF_MAX_SECONDS,
        evidence_dir=settings.EVIDENCE_DIR,
    )
    return EventLifecycleManager(
        store=store,
        checker=checker,
        gateway=gateway,
        orchestrator=orchestrator,
        profile=profile,
        lookahead_days=settings.DISCOVERY_LOOKAHEAD_DAYS,
        concurrency=settings.WORKER_CONCURRENCY,
        tz_name=settings.TIMEZONE,
    )


async def run() -> None:
    browser = PlaywrightBrowser(
        concurrency=settings.BROWSER_CONCURRENCY,
        page_timeout_seconds=settings.PAGE_TIMEOUT_SECONDS,
    )
    lifecycle = build_pipeline(browser)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    logger.info("Family Event Planner started (approvals via %s)", settings.APPROVAL_CHANNEL)
    try:
        await run_scheduler(lifecycle, settings.SWEEP_INTERVAL_SECONDS, stop)
    finally:
        await browser.close()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
