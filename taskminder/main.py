"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from taskminder.config import load_settings, today_in
from taskminder.db import Database
from taskminder.generation import TaskGenerator
from taskminder.scheduler import GenerationScheduler

LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize storage, generate once for app launch, then keep generating."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())

    db = Database(settings.database_path)
    db.initialize()

    generator = TaskGenerator(db)
    scheduler = GenerationScheduler(
        generator=generator,
        today_provider=lambda: today_in(settings),
        poll_interval_seconds=settings.poll_interval_seconds,
    )

    LOGGER.info("Starting task generation: db=%s timezone=%s", settings.database_path, settings.timezone)
    try:
        await scheduler.run_forever()
    finally:
        scheduler.stop()
        LOGGER.info("Task generation shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
