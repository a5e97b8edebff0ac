"""
Periodic runner for the observer tick and the sweep cycle.

Each job is a blocking callable; it runs in a worker thread so the event loop
(and the HTTP server sharing it) stays responsive. A job that raises is logged
and retried on the next interval.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name: str, job: Callable[[], object], interval: float, run_immediately: bool = True) -> None:
        self.name = name
        self.job = job
        self.interval = interval
        self.run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> object:
        try:
            return await asyncio.to_thread(self.job)
        except Exception:
            logger.exception(f"Periodic job {self.name} failed; retrying in {self.interval}s")
            return None

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=self.name)
            logger.info(f"Started periodic job {self.name} every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class Scheduler:
    def __init__(self, tasks: List[PeriodicTask]) -> None:
        self.tasks = tasks

    def start(self) -> None:
        for task in self.tasks:
            task.start()

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
