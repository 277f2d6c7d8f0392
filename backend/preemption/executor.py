"""
Bounded Concurrency Executor - semaphore-gated fan-out / fan-in.

Used by every stage that issues N independent remote calls:
- a slot is acquired BEFORE a call is dispatched (at most `limit` in flight)
- every call releases its slot on completion, success or failure
- the caller waits for all dispatched calls (barrier) before returning
- a failed item is logged and excluded; partial success is a valid result
- output order is completion order, not input order

If the fan-out itself is cancelled, dispatched calls are cancelled and
joined before the cancellation propagates.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")

DEFAULT_CONCURRENCY = 5


class BoundedExecutor:
    """Fan-out/fan-in with a fixed concurrency ceiling."""

    def __init__(self, limit: int = DEFAULT_CONCURRENCY, metrics=None) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self.limit = limit
        self._metrics = metrics

    async def run(
        self,
        items: Iterable[T],
        call: Callable[[T], Awaitable[Optional[bool]]],
        label: str = "call",
    ) -> List[T]:
        """
        Run `call(item)` for every item, at most `limit` at a time.

        An item is in the result iff its call returned a truthy value.
        A falsy return excludes the item without counting as a failure;
        an exception is logged and excludes the item.
        """
        items = list(items)
        if not items:
            return []

        slots = asyncio.Semaphore(self.limit)
        succeeded: List[T] = []
        failed = 0
        tasks: List[asyncio.Task] = []

        async def _dispatch(item: T) -> None:
            nonlocal failed
            self._inflight(1)
            try:
                ok = await call(item)
            except Exception as exc:
                failed += 1
                logger.warning(f"[EXECUTOR] {label} failed for {item}: {exc}")
                return
            finally:
                self._inflight(-1)
                slots.release()
            if ok:
                succeeded.append(item)

        try:
            for item in items:
                await slots.acquire()
                tasks.append(asyncio.ensure_future(_dispatch(item)))
            logger.debug(f"[EXECUTOR] {label}: waiting for {len(tasks)} operation(s) to finish")
            await asyncio.gather(*tasks)
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        logger.debug(
            f"[EXECUTOR] {label}: {len(succeeded)} succeeded, {failed} failed, "
            f"{len(items) - len(succeeded) - failed} skipped"
        )
        return succeeded

    def _inflight(self, delta: int) -> None:
        if self._metrics is not None:
            self._metrics.add_inflight_calls(delta)
