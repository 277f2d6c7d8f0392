"""
Signal channel + cancellation scope - the two things a workflow waits on.

Signals are delivered in order and never dropped. The control loop reads
them with receive_latest(): everything queued while a run was in progress is
coalesced into the most recent request.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class SignalChannel:
    """Unbounded FIFO of signal payloads for one named channel."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self.delivered = 0

    def send(self, payload: Any) -> None:
        self._queue.put_nowait(payload)
        self.delivered += 1

    def pending(self) -> int:
        return self._queue.qsize()

    async def receive(self) -> Any:
        """Block until a payload is available and return it."""
        return await self._queue.get()

    def receive_nowait(self) -> Optional[Any]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def receive_latest(self) -> tuple[Any, int]:
        """
        Block for one payload, then drain the queue.

        Returns (latest payload, number of older payloads coalesced).
        """
        payload = await self._queue.get()
        coalesced = 0
        while True:
            newer = self.receive_nowait()
            if newer is None:
                break
            payload = newer
            coalesced += 1
        return payload, coalesced


class CancellationScope:
    """One-shot cancellation flag a workflow can wait on."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def select(cancellation: CancellationScope, channel: SignalChannel) -> Optional[tuple[Any, int]]:
    """
    Block on {cancellation, signal}. No timeout.

    Returns None on cancellation, else (payload, coalesced) from the channel.
    Cancellation wins when both are ready; a signal already taken off the
    queue in that case is put back so it is not lost.
    """
    if cancellation.cancelled:
        return None

    cancel_task = asyncio.ensure_future(cancellation.wait())
    signal_task = asyncio.ensure_future(channel.receive_latest())
    try:
        await asyncio.wait({cancel_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (cancel_task, signal_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(cancel_task, signal_task, return_exceptions=True)

    if cancellation.cancelled:
        if signal_task.done() and not signal_task.cancelled():
            payload, _ = signal_task.result()
            channel.send(payload)
            channel.delivered -= 1
        return None
    return signal_task.result()
