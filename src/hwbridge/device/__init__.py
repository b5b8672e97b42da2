"""Hardware device access.

- DeviceSession: exclusive, auto-recovering access to the single device
- SimulatedDeviceTransport: mnemonic-backed device for development and tests
"""

from hwbridge.device.base import DeviceAddress, DeviceHandle, DeviceStatusError, DeviceTransport
from hwbridge.device.factory import get_device_session, reset_device_session
from hwbridge.device.session import DeviceSession, SessionHandle, SessionState

__all__ = [
    "DeviceAddress",
    "DeviceHandle",
    "DeviceSession",
    "DeviceStatusError",
    "DeviceTransport",
    "SessionHandle",
    "SessionState",
    "get_device_session",
    "reset_device_session",
]
