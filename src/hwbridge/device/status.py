"""Map device status words onto the error taxonomy."""

import logging

from hwbridge.errors import (
    DeviceLocked,
    DeviceUnavailable,
    HWBridgeError,
    InvalidParameters,
    UserRejected,
    WrongApp,
)

logger = logging.getLogger(__name__)

SW_OK = 0x9000
SW_USER_REJECTED = 0x6985
SW_INVALID_DATA = 0x6A80
SW_INS_NOT_SUPPORTED = 0x6D00
SW_CLA_NOT_SUPPORTED = 0x6E00
SW_WRONG_APP = 0x6E01
SW_LOCKED = 0x5515
SW_LOCKED_ALT = 0x6982
SW_APP_NOT_OPEN = 0x6511


def classify_status_word(status_word: int, operation: str = "device_operation") -> HWBridgeError:
    """Translate a device status word into a pipeline error."""
    hex_sw = f"0x{status_word:04x}"

    if status_word == SW_USER_REJECTED:
        return UserRejected(
            f"User rejected {operation} on device", component="device", status_word=hex_sw
        )
    if status_word in (SW_CLA_NOT_SUPPORTED, SW_INS_NOT_SUPPORTED, SW_WRONG_APP, SW_APP_NOT_OPEN):
        return WrongApp(
            f"Chain app not open on device during {operation}",
            component="device",
            status_word=hex_sw,
        )
    if status_word in (SW_LOCKED, SW_LOCKED_ALT):
        return DeviceLocked(
            f"Device is locked during {operation}", component="device", status_word=hex_sw
        )
    if status_word == SW_INVALID_DATA:
        return InvalidParameters(
            f"Device rejected data for {operation} (invalid data or blind signing disabled)",
            hint="Enable blind signing in the device app settings, or check the payload",
            component="device",
            status_word=hex_sw,
        )

    logger.warning(f"Unknown device status word {hex_sw} during {operation}")
    return DeviceUnavailable(
        f"Device returned unexpected status {hex_sw} during {operation}",
        component="device",
        status_word=hex_sw,
    )
