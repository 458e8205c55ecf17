"""Cancellation token threaded through every network call of a request.

Once cancelled a token stays cancelled. Backoff waits go through
CancellationToken.sleep() so a cancel interrupts them immediately instead
of after the full delay, and CancellationToken.race() lets a cancel cut
short a read that would otherwise never return.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from agent.errors import UserCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UserCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``. Returns True if cancelled meanwhile."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def race(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token is cancelled first.

        On cancel the pending awaitable is cancelled and awaited, so its
        cleanup (closing streams, releasing connections) runs before
        UserCancelled is raised.
        """
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_and_wait(task)
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        await _cancel_and_wait(task)
        raise UserCancelled(self.reason or "cancelled")


async def _cancel_and_wait(task: asyncio.Future) -> None:
    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Cancelled task finished with %s: %s", type(task.exception()).__name__, task.exception())
