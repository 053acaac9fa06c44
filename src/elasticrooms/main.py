import asyncio
import logging
import sys

import structlog

from elasticrooms.config import ScalingSettings, get_database_directory, get_settings
from elasticrooms.discovery.radius import RadiusCalculator
from elasticrooms.matching.scorer import MatchScorer
from elasticrooms.notify.dispatcher import LoggingNotifier, WebhookNotifier
from elasticrooms.scaling.controller import RoomScalingController
from elasticrooms.scaling.partition import VibeAwarePartition
from elasticrooms.store.base import Notifier
from elasticrooms.store.memory import InMemoryStore
from elasticrooms.store.repository import SqlStore

MEMORY_DATABASE_SUFFIX = ":memory:"


def configure_logging(log_level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_store(settings: ScalingSettings) -> SqlStore | InMemoryStore:
    if settings.database_url.endswith(MEMORY_DATABASE_SUFFIX):
        return InMemoryStore()
    return SqlStore(settings.database_url)


def build_controller(
    settings: ScalingSettings, store: SqlStore | InMemoryStore
) -> RoomScalingController:
    notifier: Notifier
    if settings.notify_webhook_url:
        notifier = WebhookNotifier(settings.notify_webhook_url)
    else:
        notifier = LoggingNotifier()

    scorer = MatchScorer(settings)
    return RoomScalingController(
        settings=settings,
        presence_store=store,
        room_store=store,
        notifier=notifier,
        radius_calculator=RadiusCalculator(settings, store),
        scorer=scorer,
        partition_strategy=VibeAwarePartition(scorer),
    )


async def run(settings: ScalingSettings) -> None:
    db_dir = get_database_directory(settings.database_url)
    if db_dir is not None:
        db_dir.mkdir(parents=True, exist_ok=True)

    store = build_store(settings)
    await store.initialize()
    controller = build_controller(settings, store)
    controller.start()
    try:
        await asyncio.Event().wait()
    finally:
        await controller.stop()
        await store.close()


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    logger = structlog.get_logger()
    logger.info("Starting elastic rooms controller", settings=repr(settings))

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)


if __name__ == "__main__":
    main()
