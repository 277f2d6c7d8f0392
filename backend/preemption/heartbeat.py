"""
Liveness Reporter - periodic heartbeat while a stage runs.

    async with liveness(interval=2.0):
        ...  # blocking remote calls

Started before the stage's first blocking call, stopped on every exit path
(including failure). Has no effect on the stage result. Outside an activity
attempt there is nobody to report to, so it does nothing.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .runtime.activity import ActivityContext, current_activity

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 2.0  # seconds


class LivenessReporter:
    """Background task calling ctx.heartbeat() every `interval` seconds."""

    def __init__(self, ctx: ActivityContext, interval: float = DEFAULT_HEARTBEAT_INTERVAL) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._ctx = ctx
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._beat())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.debug(f"[HEARTBEAT] stopping heartbeat for {self._ctx.activity}")

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            logger.debug(f"[HEARTBEAT] sending heartbeat for {self._ctx.activity} (interval={self.interval}s)")
            self._ctx.heartbeat()


@asynccontextmanager
async def liveness(interval: float = DEFAULT_HEARTBEAT_INTERVAL) -> AsyncIterator[Optional[LivenessReporter]]:
    """Run a LivenessReporter for the current activity for the block's duration."""
    ctx = current_activity()
    if ctx is None:
        yield None
        return

    reporter = LivenessReporter(ctx, interval)
    reporter.start()
    try:
        yield reporter
    finally:
        await reporter.stop()
