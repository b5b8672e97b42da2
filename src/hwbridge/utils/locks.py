"""Concurrency primitives for the device session.

Provides timed lock acquisition and a single-flight helper that lets
concurrent callers share one in-flight operation.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


async def acquire_with_timeout(
    lock: asyncio.Lock,
    timeout: Optional[float] = None,
    operation: str = "device_operation",
) -> None:
    """Acquire lock, waiting at most timeout seconds (None = wait forever).

    asyncio.Lock wakes waiters in arrival order, so queued callers are
    served FIFO.

    Raises:
        LockTimeoutError: if the lock was not acquired in time
    """
    if timeout is not None:
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock within {timeout}s: {operation}")
    else:
        await lock.acquire()

    logger.debug(f"Lock acquired: {operation}")


@asynccontextmanager
async def timed_lock(
    lock: asyncio.Lock,
    timeout: Optional[float] = None,
    operation: str = "device_operation",
):
    """Functional context manager around acquire_with_timeout.

    Example:
        async with timed_lock(lock, timeout=5, operation="sign"):
            # exclusive section
            pass
    """
    await acquire_with_timeout(lock, timeout, operation)
    try:
        yield
    finally:
        lock.release()
        logger.debug(f"Lock released: {operation}")


class SingleFlight:
    """Share one in-flight operation among concurrent callers.

    The first caller starts the operation as a task; callers arriving while
    it runs await the same task. Each caller waits through asyncio.shield,
    so a caller's timeout or cancellation abandons only its own wait and
    never cancels the shared operation.
    """

    def __init__(self, name: str = "operation"):
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(
        self,
        factory: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> Any:
        """Join the in-flight operation, starting it via factory if none runs.

        Raises:
            asyncio.TimeoutError: if this caller's wait exceeds timeout
        """
        if self._task is None or self._task.done():
            logger.debug(f"Starting single-flight {self.name}")
            self._task = asyncio.ensure_future(factory())
            self._task.add_done_callback(self._on_done)
        else:
            logger.debug(f"Joining in-flight {self.name}")

        task = self._task
        if timeout is not None:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await asyncio.shield(task)

    async def wait(self) -> None:
        """Wait for the in-flight operation, if any, ignoring its outcome."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait([task])

    def _on_done(self, task: asyncio.Task) -> None:
        if self._task is task:
            self._task = None
        # Retrieve the outcome so abandoned failures are not reported as
        # "exception was never retrieved".
        if not task.cancelled():
            task.exception()
