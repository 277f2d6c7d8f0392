"""
Workflow Host - in-process stand-in for the durable execution substrate.

Provides the substrate surface the control loop is written against:
- named signal channels (signal / signal-with-start)
- a cancellation scope
- activity execution (ActivityRunner: timeout, heartbeat, retry)
- query handler registration, answerable while a run is in progress

One host owns one workflow id; at most one execution runs at a time.
Nothing is persisted: a process restart starts a fresh execution.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from .activity import ActivityOptions, ActivityRunner
from .channels import CancellationScope, SignalChannel

logger = logging.getLogger(__name__)


class WorkflowNotRunningError(Exception):
    """Signal/cancel sent to a workflow that is not running."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow {workflow_id} is not running")


class WorkflowNotStartedError(WorkflowNotRunningError):
    """Query sent to a workflow id that never had an execution."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        Exception.__init__(self, f"workflow {workflow_id} has not been started")


class QueryNotFoundError(KeyError):
    """No handler registered for the query type."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WorkflowInfo:
    workflow_id: str
    run_id: str
    workflow_name: str
    started_at: datetime


class WorkflowContext:
    """Everything a running workflow may touch on the substrate."""

    def __init__(
        self,
        info: WorkflowInfo,
        runner: ActivityRunner,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.info = info
        self.cancellation = CancellationScope()
        self._runner = runner
        self._clock = clock
        self._signals: dict[str, SignalChannel] = {}
        self._queries: dict[str, Callable[[], Any]] = {}

    def now(self) -> datetime:
        return self._clock()

    def get_signal_channel(self, name: str) -> SignalChannel:
        if name not in self._signals:
            self._signals[name] = SignalChannel(name)
        return self._signals[name]

    def set_query_handler(self, query_type: str, handler: Callable[[], Any]) -> None:
        self._queries[query_type] = handler

    def query(self, query_type: str) -> Any:
        handler = self._queries.get(query_type)
        if handler is None:
            raise QueryNotFoundError(query_type)
        return handler()

    async def execute_activity(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        options: ActivityOptions,
    ) -> Any:
        return await self._runner.execute(fn, *args, options=options)


class Workflow(Protocol):
    async def run(self, ctx: WorkflowContext) -> Any: ...


@dataclass(frozen=True)
class WorkflowHandle:
    workflow_id: str
    run_id: str


class WorkflowHost:
    """Starts, signals, queries and cancels executions of one workflow id."""

    def __init__(
        self,
        workflow_factory: Callable[[], Workflow],
        *,
        workflow_id: str,
        workflow_name: str,
        runner: Optional[ActivityRunner] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._factory = workflow_factory
        self.workflow_id = workflow_id
        self.workflow_name = workflow_name
        self._runner = runner or ActivityRunner()
        self._clock = clock
        self._ctx: Optional[WorkflowContext] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def context(self) -> Optional[WorkflowContext]:
        return self._ctx

    def _handle(self) -> WorkflowHandle:
        assert self._ctx is not None
        return WorkflowHandle(self._ctx.info.workflow_id, self._ctx.info.run_id)

    def start(self) -> WorkflowHandle:
        """Start a new execution; returns the running one if already started."""
        if self.running:
            return self._handle()

        info = WorkflowInfo(
            workflow_id=self.workflow_id,
            run_id=str(uuid.uuid4()),
            workflow_name=self.workflow_name,
            started_at=self._clock(),
        )
        self._ctx = WorkflowContext(info, self._runner, clock=self._clock)
        workflow = self._factory()
        self._task = asyncio.get_running_loop().create_task(
            workflow.run(self._ctx), name=f"workflow:{self.workflow_id}"
        )
        logger.info(
            f"[HOST] Started workflow {self.workflow_name} "
            f"(id={info.workflow_id}, run_id={info.run_id})"
        )
        return self._handle()

    def signal(self, channel: str, payload: Any) -> None:
        if not self.running:
            raise WorkflowNotRunningError(self.workflow_id)
        self._ctx.get_signal_channel(channel).send(payload)
        logger.debug(f"[HOST] Signal delivered on {channel}")

    def signal_with_start(self, channel: str, payload: Any) -> WorkflowHandle:
        """Deliver the signal, starting an execution first if none is running."""
        handle = self.start()
        self.signal(channel, payload)
        return handle

    def query(self, query_type: str) -> Any:
        """Answer a query from the current (or last finished) execution."""
        if self._ctx is None:
            raise WorkflowNotStartedError(self.workflow_id)
        return self._ctx.query(query_type)

    def cancel(self, reason: str = "cancel requested") -> None:
        if not self.running:
            raise WorkflowNotRunningError(self.workflow_id)
        self._ctx.cancellation.cancel(reason)
        logger.info(f"[HOST] Cancellation requested for {self.workflow_id}: {reason}")

    async def result(self) -> Any:
        """Wait for the current execution to finish and return its result."""
        if self._task is None:
            raise WorkflowNotStartedError(self.workflow_id)
        return await self._task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel the execution (if running) and wait for the loop to exit."""
        if not self.running:
            return
        self._ctx.cancellation.cancel("worker shutdown")
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[HOST] Workflow {self.workflow_id} did not stop in {timeout}s, aborting")
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
