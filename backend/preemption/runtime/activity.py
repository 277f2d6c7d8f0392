"""
Activity Runner - executes workflow stages with timeout, heartbeat and retry.

Akış: attempt → start-to-close timeout + heartbeat watchdog → success?
      failure → non-retryable? → raise ActivityError
              → attempts left? → backoff sleep → next attempt
              → exhausted      → raise ActivityError

The running attempt can reach its own ActivityContext through
current_activity() (contextvar), which is how the liveness reporter records
heartbeats without the stage knowing about the runner.

Scope = process-local, in-memory. No persistence, no replay.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .retry_policy import (
    DEFAULT_RETRY_POLICY,
    ERR_INTERNAL,
    ActivityError,
    HeartbeatTimeoutError,
    RetryableError,
    RetryPolicy,
    is_non_retryable,
)

logger = logging.getLogger(__name__)
T = TypeVar("T")


class StartToCloseTimeoutError(RetryableError):
    """Single attempt exceeded start_to_close_timeout."""

    def __init__(self, activity: str, timeout: float):
        super().__init__(
            f"activity {activity} timed out", type=ERR_INTERNAL, timeout=f"{timeout}s"
        )


@dataclass(frozen=True)
class ActivityOptions:
    """Per-activity execution options."""
    start_to_close_timeout: float = 300.0  # seconds, per attempt
    heartbeat_timeout: Optional[float] = 5.0  # None = no heartbeat watchdog
    retry_policy: RetryPolicy = field(default_factory=lambda: DEFAULT_RETRY_POLICY)
    wait_for_cancellation: bool = False


class ActivityContext:
    """State of one activity attempt, visible to the running stage."""

    def __init__(self, activity: str, attempt: int, metrics=None) -> None:
        self.activity = activity
        self.attempt = attempt
        self.heartbeat_count = 0
        self.heartbeat_details: tuple = ()
        self._metrics = metrics
        self.last_heartbeat = self._now()

    @staticmethod
    def _now() -> float:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return time.monotonic()

    def heartbeat(self, *details: Any) -> None:
        """Record a liveness signal for this attempt."""
        self.heartbeat_count += 1
        self.heartbeat_details = details
        self.last_heartbeat = self._now()
        if self._metrics is not None:
            self._metrics.inc_heartbeat(self.activity)


_current_activity: ContextVar[Optional[ActivityContext]] = ContextVar(
    "current_activity", default=None
)


def current_activity() -> Optional[ActivityContext]:
    """Context of the activity attempt running in this task (None outside)."""
    return _current_activity.get()


def _consume_result(task: asyncio.Task) -> None:
    # abandoned attempts (wait_for_cancellation=False) must not leak
    # "exception was never retrieved" warnings
    if not task.cancelled():
        task.exception()


class ActivityRunner:
    """
    Runs activities under ActivityOptions.

    Backoff delays are owned here, not by the workflow. `sleep` is injectable
    so tests can observe delays without waiting for them.
    """

    def __init__(
        self,
        metrics=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._metrics = metrics
        self._sleep = sleep

    async def execute(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        options: ActivityOptions,
        name: Optional[str] = None,
    ) -> T:
        """
        Execute `fn(*args)` until it succeeds or the retry policy gives up.

        Raises:
            ActivityError: non-retryable failure or retries exhausted
        """
        name = name or getattr(fn, "__name__", repr(fn))
        policy = options.retry_policy
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await self._run_attempt(fn, args, name, attempt, options)
            except Exception as exc:
                if is_non_retryable(exc):
                    self._inc_attempt(name, "non_retryable")
                    logger.warning(
                        f"[ACTIVITY] {name} attempt {attempt} failed (non-retryable): {exc}"
                    )
                    raise ActivityError(name, attempt, exc) from exc

                if not policy.has_attempts_left(attempt):
                    self._inc_attempt(name, "exhausted")
                    logger.warning(
                        f"[ACTIVITY] {name} attempt {attempt} failed, retries exhausted: {exc}"
                    )
                    raise ActivityError(name, attempt, exc) from exc

                self._inc_attempt(name, "retry")
                delay = policy.delay_after(attempt)
                limit = policy.maximum_attempts or "inf"
                logger.warning(
                    f"[ACTIVITY] {name} attempt {attempt}/{limit} failed: {exc} "
                    f"- retrying in {delay:.3f}s"
                )
                await self._sleep(delay)
                continue

            self._inc_attempt(name, "success")
            if attempt > 1:
                logger.info(f"[ACTIVITY] {name} succeeded on attempt {attempt}")
            return result

    async def _run_attempt(
        self,
        fn: Callable[..., Awaitable[T]],
        args: tuple,
        name: str,
        attempt: int,
        options: ActivityOptions,
    ) -> T:
        """One attempt: start-to-close deadline + heartbeat watchdog."""
        loop = asyncio.get_running_loop()
        ctx = ActivityContext(name, attempt, metrics=self._metrics)

        async def _invoke() -> T:
            # runs in the task's own context copy
            _current_activity.set(ctx)
            return await fn(*args)

        task = loop.create_task(_invoke(), name=f"activity:{name}:{attempt}")
        deadline = loop.time() + options.start_to_close_timeout
        heartbeat_timeout = options.heartbeat_timeout

        try:
            while not task.done():
                now = loop.time()
                if now >= deadline:
                    raise StartToCloseTimeoutError(name, options.start_to_close_timeout)
                wait = deadline - now
                if heartbeat_timeout is not None:
                    idle = now - ctx.last_heartbeat
                    if idle >= heartbeat_timeout:
                        raise HeartbeatTimeoutError(name, heartbeat_timeout)
                    wait = min(wait, heartbeat_timeout - idle)
                await asyncio.wait({task}, timeout=wait)
            return task.result()
        finally:
            if not task.done():
                task.cancel()
                if options.wait_for_cancellation:
                    await asyncio.gather(task, return_exceptions=True)
                else:
                    task.add_done_callback(_consume_result)

    def _inc_attempt(self, name: str, result: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_activity_attempt(name, result)
