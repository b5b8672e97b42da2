"""Exclusive, auto-recovering access to the single hardware device.

One DeviceSession per process (see device.factory). Concurrent callers:
1. Share one in-flight connect (single-flight) while Disconnected
2. Queue FIFO on an asyncio.Lock while the device is Busy
3. Get exactly one transparent reconnect-and-retry on a transport fault

State is derived from the session's fields rather than stored:

    Disconnected -> Connecting -> Ready <-> Busy
    any          -> Closing    -> Disconnected   (close)
    Busy         -> Disconnected                 (transport fault, device timeout,
                                                  signature mismatch)

close() waits for the current holder and every caller already queued, then
releases the transport. Requests arriving after close() started fail with
SessionClosing. The session is re-enterable once close() returns.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from hwbridge.config import get_settings
from hwbridge.derivation import DerivationPath
from hwbridge.device.base import DeviceAddress, DeviceHandle, DeviceStatusError, DeviceTransport
from hwbridge.device.status import classify_status_word
from hwbridge.errors import (
    AcquireTimeout,
    DeviceTimeout,
    DeviceUnavailable,
    HWBridgeError,
    SessionClosing,
    TransportError,
)
from hwbridge.utils.locks import LockTimeoutError, SingleFlight, acquire_with_timeout, timed_lock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    BUSY = "busy"
    CLOSING = "closing"


class SessionHandle:
    """Caller's view of the device while holding the session.

    Valid only inside DeviceSession.acquire / run_exclusive. Every call is
    bounded by the device operation timeout.
    """

    def __init__(self, session: "DeviceSession", handle: DeviceHandle):
        self._session = session
        self._handle: Optional[DeviceHandle] = handle

    @property
    def generation(self) -> int:
        """Connection generation; changes on every reconnect."""
        return self._session.generation

    async def get_address(self, path: DerivationPath, display: bool = False) -> DeviceAddress:
        return await self._session._device_call(
            self, "get_address", lambda h: h.get_address(path, display), path
        )

    async def sign(self, path: DerivationPath, message: bytes) -> bytes:
        return await self._session._device_call(
            self, "sign", lambda h: h.sign(path, message), path
        )

    def _raw(self) -> DeviceHandle:
        if self._handle is None or self._handle is not self._session._handle:
            raise TransportError(
                "Session handle is stale (device was disconnected)",
                component="device_session",
            )
        return self._handle


class DeviceSession:
    """Owns the device connection and serializes access to it."""

    def __init__(
        self,
        transport: DeviceTransport,
        connect_timeout: Optional[float] = None,
        max_connect_attempts: Optional[int] = None,
        connect_backoff: Optional[float] = None,
        op_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self._transport = transport
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.device_connect_timeout
        self.max_connect_attempts = max_connect_attempts or settings.device_max_connect_attempts
        self.connect_backoff = connect_backoff if connect_backoff is not None else settings.device_connect_backoff
        self.op_timeout = op_timeout if op_timeout is not None else settings.device_op_timeout

        self._handle: Optional[DeviceHandle] = None
        self._lock = asyncio.Lock()
        self._connect_flight = SingleFlight("device connect")
        self._closers = 0
        self.generation = 0

    @property
    def state(self) -> SessionState:
        if self._closers:
            return SessionState.CLOSING
        if self._lock.locked():
            return SessionState.BUSY
        if self._connect_flight.in_flight:
            return SessionState.CONNECTING
        if self._handle is not None:
            return SessionState.READY
        return SessionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self._handle is not None

    # ======================
    # Public API
    # ======================

    @asynccontextmanager
    async def acquire(
        self,
        timeout: Optional[float] = None,
        operation: str = "device_operation",
    ) -> AsyncIterator[SessionHandle]:
        """Hold the device exclusively for the duration of the block.

        Args:
            timeout: Seconds this caller will wait for connect + queue
                (None = wait forever). Expiry abandons only this caller's wait.
            operation: Description for logging and error context

        Raises:
            SessionClosing: if close() has started
            DeviceUnavailable: if the transport cannot be opened
            AcquireTimeout: if the wait exceeds timeout

        Example:
            async with session.acquire(timeout=10) as device:
                sig = await device.sign(path, message)
        """
        self._reject_if_closing(operation)
        deadline = self._deadline(timeout)

        await self._ensure_connected(self._remaining(deadline), operation)

        try:
            await acquire_with_timeout(self._lock, self._remaining(deadline), operation)
        except LockTimeoutError as e:
            raise AcquireTimeout(
                f"Timed out after {timeout}s waiting for the device: {operation}",
                component="device_session",
            ) from e

        session_handle: Optional[SessionHandle] = None
        try:
            # The previous holder may have torn the session down.
            handle = await self._ensure_connected(self._remaining(deadline), operation)
            session_handle = SessionHandle(self, handle)
            yield session_handle
        except HWBridgeError as e:
            if e.tears_down_session:
                await self._teardown(f"{e.kind.value} during {operation}")
            raise
        finally:
            if session_handle is not None:
                session_handle._handle = None
            self._lock.release()
            logger.debug(f"Lock released: {operation}")

    async def run_exclusive(
        self,
        op: Callable[[SessionHandle], Awaitable[T]],
        timeout: Optional[float] = None,
        operation: str = "device_operation",
    ) -> T:
        """Run op with exclusive device access, always releasing afterwards.

        A TransportError raised by op tears the session down and op is run
        exactly once more on a fresh connection, still holding the device.
        A second failure surfaces to the caller. Nothing else is retried.
        The reconnect counts against the caller's timeout.
        """
        deadline = self._deadline(timeout)
        async with self.acquire(timeout=timeout, operation=operation) as handle:
            try:
                return await op(handle)
            except TransportError as e:
                logger.warning(f"Transport error during {operation}, reconnecting once: {e}")
                await self._teardown(f"transport error during {operation}")
                handle._handle = await self._ensure_connected(self._remaining(deadline), operation)
                return await op(handle)

    async def close(self) -> None:
        """Wait for the current holder, release the transport, go Disconnected."""
        self._closers += 1
        logger.info("Closing device session")
        try:
            async with timed_lock(self._lock, operation="close"):
                await self._connect_flight.wait()
                await self._teardown("session closed")
        finally:
            self._closers -= 1
        logger.info("Device session closed")

    # ======================
    # Internals
    # ======================

    def _reject_if_closing(self, operation: str) -> None:
        if self._closers:
            raise SessionClosing(
                f"Device session is closing; rejected {operation}",
                component="device_session",
            )

    @staticmethod
    def _deadline(timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        # wait_for treats <= 0 as "no time left"; keep a positive floor
        return max(deadline - asyncio.get_running_loop().time(), 1e-3)

    async def _ensure_connected(self, timeout: Optional[float], operation: str) -> DeviceHandle:
        if self._handle is not None:
            return self._handle
        try:
            return await self._connect_flight.run(self._open_transport, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise AcquireTimeout(
                f"Timed out waiting for device connection: {operation}",
                component="device_session",
            ) from e

    async def _open_transport(self) -> DeviceHandle:
        """Open the transport, retrying up to max_connect_attempts."""
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_connect_attempts + 1):
            try:
                handle = await asyncio.wait_for(self._transport.open(), timeout=self.connect_timeout)
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(
                    f"Device open timed out after {self.connect_timeout}s "
                    f"(attempt {attempt}/{self.max_connect_attempts})"
                )
            except (DeviceUnavailable, OSError) as e:
                last_error = e
                logger.warning(
                    f"Device open failed (attempt {attempt}/{self.max_connect_attempts}): {e}"
                )
            else:
                self._handle = handle
                self.generation += 1
                logger.info(f"Device connected (generation {self.generation})")
                return handle

            if attempt < self.max_connect_attempts:
                await asyncio.sleep(self.connect_backoff)

        raise DeviceUnavailable(
            f"Could not open device after {self.max_connect_attempts} attempts: {last_error}",
            component="device_session",
        ) from last_error

    async def _teardown(self, reason: str) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        logger.warning(f"Tearing down device session: {reason}")
        try:
            await handle.close()
        except (HWBridgeError, OSError) as e:
            logger.debug(f"Error closing device handle during teardown: {e}")

    async def _device_call(
        self,
        session_handle: SessionHandle,
        name: str,
        call: Callable[[DeviceHandle], Awaitable[Any]],
        path: DerivationPath,
    ) -> Any:
        raw = session_handle._raw()
        try:
            return await asyncio.wait_for(call(raw), timeout=self.op_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Device {name} timed out after {self.op_timeout}s at {path}")
            await self._teardown(f"{name} timed out")
            raise DeviceTimeout(
                f"Device {name} timed out after {self.op_timeout}s",
                component="device_session",
                path=str(path),
            ) from e
        except DeviceStatusError as e:
            error = classify_status_word(e.status_word, name)
            logger.error(f"Device {name} failed at {path}: {error.message}")
            raise error.annotate(path=str(path)) from e
        except HWBridgeError as e:
            raise e.annotate(component="device_session", path=str(path))
        except OSError as e:
            raise TransportError(
                f"Device I/O error during {name}: {e}",
                component="device_session",
                path=str(path),
            ) from e
        except asyncio.CancelledError:
            # Wire state is unknown after an interrupted exchange.
            await self._teardown(f"{name} cancelled mid-operation")
            raise
