"""In-process periodic workers for the enforcement drain and the sweep.

Each worker runs as an ``asyncio`` background task that calls one coroutine
every ``interval`` seconds.  Database errors are logged and the loop carries
on with the next tick; cancellation stops it.  Deployments that prefer an
external scheduler set the interval to ``0`` and use the HTTP triggers
instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """AsyncIO background task running *job* every *interval* seconds.

    Parameters
    ----------
    name:
        Label used in logs.
    job:
        Zero-argument coroutine function executed on every tick.
    interval:
        Seconds between the end of one run and the start of the next.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval: float,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._name = name
        self._job = job
        self._interval = interval
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the worker loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the background task."""
        if self._running:
            logger.warning("%s already running; ignoring start()", self._name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self._name)
        logger.info("%s started (interval=%ss)", self._name, self._interval)

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self._name)

    async def run_once(self) -> Any:
        """Execute the job a single time (used by the loop and by tests)."""
        return await self._job()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("%s database error: %s", self._name, exc, exc_info=True)
            except Exception as exc:
                logger.critical("%s unexpected error: %s", self._name, exc, exc_info=True)
                raise
            await asyncio.sleep(self._interval)
