"""Async trigger that periodically runs task generation."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Callable

from taskminder.generation import TaskGenerator

LOGGER = logging.getLogger(__name__)


class GenerationScheduler:
    """Runs generation on an interval and the monthly fill on each new month."""

    def __init__(
        self,
        generator: TaskGenerator,
        today_provider: Callable[[], date],
        poll_interval_seconds: float = 3600.0,
    ) -> None:
        self._generator = generator
        self._today_provider = today_provider
        self._poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()
        self._last_monthly_run: tuple[int, int] | None = None

    def run_once(self) -> int:
        """Generate for the current date; returns the number of tasks created."""

        today = self._today_provider()
        created = self._generator.generate_all(today)
        month = (today.year, today.month)
        if self._last_monthly_run != month:
            created += self._generator.generate_monthly(today)
            self._last_monthly_run = month
        return created

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduled task generation failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
