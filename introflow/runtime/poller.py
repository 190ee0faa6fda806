"""Jittered fixed-interval polling loop on APScheduler."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class Poller:
    """Runs one polling cycle on an interval until stopped.

    Each cycle is an APScheduler job with ``max_instances=1`` and
    ``coalesce=True``, so a slow cycle is never overlapped by the next one
    and missed runs collapse into a single run. The stop signal is checked
    before every cycle, and stopping waits for a cycle already in flight.
    """

    def __init__(
        self,
        name: str,
        cycle: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        jitter_seconds: float = 0.0,
    ):
        """Initialize the poller.

        Args:
            name: Poller name used for the job id and logs.
            cycle: Coroutine function performing one pass.
            interval_seconds: Seconds between passes.
            jitter_seconds: Random jitter added to each interval.
        """
        self.name = name
        self.cycle = cycle
        self.interval_seconds = interval_seconds
        self.jitter_seconds = jitter_seconds
        self.cycles = 0
        self.last_error: str | None = None
        self._stop_event = asyncio.Event()
        self._scheduler: AsyncIOScheduler | None = None
        self._owns_scheduler = False
        self._job: Any = None
        self._inflight: asyncio.Task[Any] | None = None

    @property
    def running(self) -> bool:
        return self._job is not None and not self._stop_event.is_set()

    def start(self, scheduler: AsyncIOScheduler | None = None) -> None:
        """Schedule the polling job, on a shared scheduler or a private one."""
        self._stop_event.clear()
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or AsyncIOScheduler()

        trigger = IntervalTrigger(seconds=self.interval_seconds, jitter=self.jitter_seconds or None)
        self._job = self._scheduler.add_job(
            func=self._tick,
            trigger=trigger,
            id=f"poller_{self.name}",
            name=f"Poller: {self.name}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self._owns_scheduler:
            self._scheduler.start()
        logger.info(
            f"Poller '{self.name}' started (interval: {self.interval_seconds}s, jitter: {self.jitter_seconds}s)"
        )

    async def stop(self) -> None:
        """Signal the loop to stop, unschedule it and wait out a running cycle."""
        self._stop_event.set()
        if self._job is not None:
            self._job.remove()
            self._job = None
        inflight = self._inflight
        if inflight is not None and inflight is not asyncio.current_task():
            logger.info(f"Poller '{self.name}' waiting for the running cycle to finish")
            await asyncio.wait({inflight})
        if self._owns_scheduler and self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=True)
        logger.info(f"Poller '{self.name}' stopped after {self.cycles} cycle(s)")

    async def run_once(self) -> Any:
        """Run a single cycle now."""
        result = await self.cycle()
        self.cycles += 1
        return result

    async def _tick(self) -> None:
        if self._stop_event.is_set():
            return
        self._inflight = asyncio.current_task()
        try:
            await self.run_once()
            self.last_error = None
        except Exception as e:
            self.last_error = str(e)
            logger.exception(f"Poller '{self.name}' cycle failed")
        finally:
            self._inflight = None
