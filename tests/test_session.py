"""Tests for DeviceSession concurrency, recovery and shutdown."""

import asyncio

import pytest

from hwbridge.derivation import parse_path
from hwbridge.device.factory import get_device_session, reset_device_session
from hwbridge.device.session import DeviceSession, SessionState
from hwbridge.device.simulated import SimulatedDeviceTransport
from hwbridge.errors import (
    AcquireTimeout,
    DeviceLocked,
    DeviceTimeout,
    DeviceUnavailable,
    SessionClosing,
    SignatureMismatch,
    TransportError,
    UserRejected,
)
from hwbridge.utils.locks import SingleFlight

from conftest import EVM_PATH, EVM_TEST_ADDRESS

PATH = parse_path(EVM_PATH)


class TestSingleFlightConnect:
    """Concurrent callers share one transport open."""

    @pytest.mark.asyncio
    async def test_three_concurrent_acquires_open_once(self, transport, session):
        """Test three acquires on a disconnected session open the transport once."""
        transport.open_delay = 0.01

        async def use():
            async with session.acquire() as device:
                return await device.get_address(PATH)

        results = await asyncio.gather(use(), use(), use())

        assert transport.open_count == 1
        assert {r.address for r in results} == {EVM_TEST_ADDRESS}

    @pytest.mark.asyncio
    async def test_many_concurrent_run_exclusive_open_once(self, transport, session):
        """Test N concurrent run_exclusive calls share one connect."""
        transport.open_delay = 0.02

        results = await asyncio.gather(
            *(session.run_exclusive(lambda d: d.get_address(PATH)) for _ in range(20))
        )

        assert len(results) == 20
        assert transport.open_count == 1

    @pytest.mark.asyncio
    async def test_state_while_connecting(self, transport, session):
        """Test the session reports CONNECTING during the open."""
        transport.open_delay = 0.05
        assert session.state == SessionState.DISCONNECTED

        task = asyncio.ensure_future(session.run_exclusive(lambda d: d.get_address(PATH)))
        await asyncio.sleep(0.01)
        assert session.state == SessionState.CONNECTING

        await task
        assert session.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_open_retries_then_unavailable(self, transport):
        """Test DeviceUnavailable after max connect attempts."""
        transport.fail_opens = 10
        session = DeviceSession(transport, max_connect_attempts=3, connect_backoff=0)

        with pytest.raises(DeviceUnavailable) as exc:
            await session.run_exclusive(lambda d: d.get_address(PATH))

        assert transport.fail_opens == 7
        assert exc.value.hint
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_open_recovers_within_attempts(self, transport):
        """Test a transient open failure is absorbed by the connect attempts."""
        transport.fail_opens = 2
        session = DeviceSession(transport, max_connect_attempts=3, connect_backoff=0)

        address = await session.run_exclusive(lambda d: d.get_address(PATH))

        assert address.address == EVM_TEST_ADDRESS
        assert transport.open_count == 1

    @pytest.mark.asyncio
    async def test_single_flight_caller_timeout_does_not_cancel(self):
        """Test one caller's timeout leaves the shared operation running."""
        flight = SingleFlight("test")
        finished = []

        async def slow():
            await asyncio.sleep(0.05)
            finished.append(True)
            return 42

        with pytest.raises(asyncio.TimeoutError):
            await flight.run(slow, timeout=0.01)

        assert await flight.run(slow) == 42
        assert finished == [True]


class TestExclusiveAccess:
    """Only one operation is on the wire at a time, served FIFO."""

    @pytest.mark.asyncio
    async def test_operations_are_serialized(self, session):
        """Test no two operations overlap."""
        active = 0
        max_active = 0

        async def op(device):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            await device.get_address(PATH)
            active -= 1

        await asyncio.gather(*(session.run_exclusive(op) for _ in range(5)))

        assert max_active == 1

    @pytest.mark.asyncio
    async def test_fifo_order(self, session):
        """Test queued callers are served in arrival order."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        order = []

        def op(name):
            async def inner(device):
                order.append(name)
                await asyncio.sleep(0.005)
            return inner

        tasks = []
        for name in "ABCDE":
            tasks.append(asyncio.ensure_future(session.run_exclusive(op(name))))
            await asyncio.sleep(0)

        await asyncio.gather(*tasks)
        assert order == list("ABCDE")

    @pytest.mark.asyncio
    async def test_release_on_exception(self, session):
        """Test the session is released when the operation raises."""
        async def boom(device):
            raise ValueError("caller bug")

        with pytest.raises(ValueError):
            await session.run_exclusive(boom)

        assert session.state == SessionState.READY
        address = await session.run_exclusive(lambda d: d.get_address(PATH))
        assert address.address == EVM_TEST_ADDRESS

    @pytest.mark.asyncio
    async def test_release_on_cancellation(self, session):
        """Test a cancelled holder releases the device."""
        started = asyncio.Event()

        async def hold(device):
            started.set()
            await asyncio.sleep(10)

        task = asyncio.ensure_future(session.run_exclusive(hold))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        address = await session.run_exclusive(lambda d: d.get_address(PATH), timeout=1)
        assert address.address == EVM_TEST_ADDRESS

    @pytest.mark.asyncio
    async def test_acquire_timeout_leaves_holder_running(self, session):
        """Test a waiter's timeout does not interrupt the current holder."""
        started = asyncio.Event()

        async def hold(device):
            started.set()
            await asyncio.sleep(0.1)
            return await device.get_address(PATH)

        holder = asyncio.ensure_future(session.run_exclusive(hold))
        await started.wait()

        with pytest.raises(AcquireTimeout) as exc:
            await session.run_exclusive(lambda d: d.get_address(PATH), timeout=0.02)
        assert not exc.value.tears_down_session

        result = await holder
        assert result.address == EVM_TEST_ADDRESS
        assert session.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_zero_timeout_fails_fast_when_busy(self, session):
        """Test timeout=0 means no waiting, not waiting forever."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        release = asyncio.Event()

        async def hold(device):
            await release.wait()

        holder = asyncio.ensure_future(session.run_exclusive(hold))
        await asyncio.sleep(0)

        with pytest.raises(AcquireTimeout):
            await asyncio.wait_for(session.run_exclusive(lambda d: d.get_address(PATH), timeout=0), timeout=1)

        release.set()
        await holder
        address = await session.run_exclusive(lambda d: d.get_address(PATH), timeout=0)
        assert address.address == EVM_TEST_ADDRESS


class TestRecovery:
    """Transport faults, device timeouts and device errors."""

    @pytest.mark.asyncio
    async def test_transport_error_retried_once(self, transport, session):
        """Test a transport error is retried transparently on a fresh connection."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        transport.fail_next_ops = 1

        signature = await session.run_exclusive(lambda d: d.sign(PATH, b"payload"))

        assert len(signature) == 65
        assert transport.open_count == 2
        assert transport.sign_calls == 1

    @pytest.mark.asyncio
    async def test_unplugged_device_reconnects(self, transport, session):
        """Test stale handles after an unplug are recovered by the retry."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        transport.unplug()

        address = await session.run_exclusive(lambda d: d.get_address(PATH))

        assert address.address == EVM_TEST_ADDRESS
        assert transport.open_count == 2

    @pytest.mark.asyncio
    async def test_second_transport_error_surfaces(self, transport, session):
        """Test the retry happens only once."""
        transport.fail_next_ops = 2

        with pytest.raises(TransportError):
            await session.run_exclusive(lambda d: d.sign(PATH, b"payload"))

        assert transport.open_count == 2
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_bounded_by_caller_timeout(self, transport, session):
        """Test the transparent reconnect gives up when the caller's deadline passes."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        transport.fail_next_ops = 1
        transport.open_delay = 0.5

        with pytest.raises(AcquireTimeout):
            await asyncio.wait_for(
                session.run_exclusive(lambda d: d.sign(PATH, b"payload"), timeout=0.1),
                timeout=0.5,
            )

        assert transport.sign_calls == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_user_rejection_not_retried(self, transport, session):
        """Test UserRejected surfaces unchanged and keeps the connection."""
        transport.reject_next = True

        with pytest.raises(UserRejected) as exc:
            await session.run_exclusive(lambda d: d.sign(PATH, b"payload"))

        assert exc.value.context["status_word"] == "0x6985"
        assert transport.sign_calls == 0
        assert transport.open_count == 1
        assert session.state == SessionState.READY

    @pytest.mark.asyncio
    async def test_device_locked(self, transport, session):
        """Test the locked status word maps to DeviceLocked."""
        transport.locked = True

        with pytest.raises(DeviceLocked):
            await session.run_exclusive(lambda d: d.get_address(PATH))

    @pytest.mark.asyncio
    async def test_device_op_timeout_tears_down(self, transport):
        """Test a hung device call fails with DeviceTimeout and disconnects."""
        session = DeviceSession(transport, op_timeout=0.02, connect_backoff=0)
        await session.run_exclusive(lambda d: d.get_address(PATH))
        transport.op_delay = 0.5

        with pytest.raises(DeviceTimeout):
            await session.run_exclusive(lambda d: d.sign(PATH, b"payload"))

        assert session.state == SessionState.DISCONNECTED
        assert transport.close_count == 1

        transport.op_delay = 0
        await session.run_exclusive(lambda d: d.get_address(PATH))
        assert transport.open_count == 2

    @pytest.mark.asyncio
    async def test_signature_mismatch_tears_down(self, session):
        """Test integrity faults raised inside the session disconnect it."""
        await session.run_exclusive(lambda d: d.get_address(PATH))

        async def verify_fails(device):
            raise SignatureMismatch("bad signature")

        with pytest.raises(SignatureMismatch):
            await session.run_exclusive(verify_fails)

        assert session.state == SessionState.DISCONNECTED


class TestClose:
    """Shutdown semantics."""

    @pytest.mark.asyncio
    async def test_close_waits_for_holder(self, transport, session):
        """Test close lets the current holder finish before releasing."""
        started = asyncio.Event()

        async def hold(device):
            started.set()
            await asyncio.sleep(0.05)
            return await device.sign(PATH, b"payload")

        holder = asyncio.ensure_future(session.run_exclusive(hold))
        await started.wait()

        await session.close()

        assert holder.done()
        assert len(holder.result()) == 65
        assert transport.close_count == 1
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_calls_during_close_rejected(self, session):
        """Test new requests after close starts get SessionClosing."""
        started = asyncio.Event()

        async def hold(device):
            started.set()
            await asyncio.sleep(0.05)

        holder = asyncio.ensure_future(session.run_exclusive(hold))
        await started.wait()
        closing = asyncio.ensure_future(session.close())
        await asyncio.sleep(0)

        assert session.state == SessionState.CLOSING
        with pytest.raises(SessionClosing):
            await session.run_exclusive(lambda d: d.get_address(PATH))

        await asyncio.gather(holder, closing)

    @pytest.mark.asyncio
    async def test_reusable_after_close(self, transport, session):
        """Test the session reconnects after close returns."""
        await session.run_exclusive(lambda d: d.get_address(PATH))
        await session.close()

        address = await session.run_exclusive(lambda d: d.get_address(PATH))

        assert address.address == EVM_TEST_ADDRESS
        assert transport.open_count == 2

    @pytest.mark.asyncio
    async def test_close_when_disconnected(self, session):
        """Test closing an unused session is a no-op."""
        await session.close()
        assert session.state == SessionState.DISCONNECTED


class TestFactory:
    """Tests for the process-wide session factory."""

    def test_singleton(self):
        """Test get_device_session returns one instance until reset."""
        first = get_device_session()
        assert get_device_session() is first

        reset_device_session()
        assert get_device_session() is not first

    def test_injected_transport(self):
        """Test a supplied transport is used on first creation."""
        transport = SimulatedDeviceTransport()
        session = get_device_session(transport)
        assert session._transport is transport
