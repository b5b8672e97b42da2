"""Device session factory.

Creates the process-wide DeviceSession for the configured backend:
- simulated: SimulatedDeviceTransport seeded from DEVICE_SEED_PHRASE
- external: a DeviceTransport supplied by the host application
"""

import logging
from typing import Optional

from hwbridge.config import get_settings
from hwbridge.device.base import DeviceTransport
from hwbridge.device.session import DeviceSession
from hwbridge.errors import DeviceUnavailable

logger = logging.getLogger(__name__)

_session_instance: Optional[DeviceSession] = None


def create_transport() -> DeviceTransport:
    """Build the transport for the configured backend.

    Raises:
        DeviceUnavailable: for the external backend, which must be injected
    """
    settings = get_settings()
    backend = settings.device_backend.lower()

    if backend == "simulated":
        from hwbridge.device.simulated import SimulatedDeviceTransport

        if settings.is_production:
            logger.warning("Simulated device backend enabled in production")
        return SimulatedDeviceTransport(mnemonic=settings.device_seed_phrase)

    raise DeviceUnavailable(
        f"Device backend '{backend}' requires a transport; pass one to get_device_session()",
        component="device_factory",
    )


def get_device_session(transport: Optional[DeviceTransport] = None) -> DeviceSession:
    """Get the process-wide device session, creating it lazily.

    Args:
        transport: Transport to use on first creation (defaults to the
            configured backend). Ignored once the session exists.
    """
    global _session_instance

    if _session_instance is not None:
        return _session_instance

    transport = transport or create_transport()
    logger.info(f"Initializing device session ({transport.__class__.__name__})")
    _session_instance = DeviceSession(transport)
    return _session_instance


async def shutdown_device_session() -> None:
    """Close and forget the process-wide session."""
    global _session_instance

    session, _session_instance = _session_instance, None
    if session is not None:
        await session.close()


def reset_device_session():
    """Reset the session instance (for testing)."""
    global _session_instance
    _session_instance = None
