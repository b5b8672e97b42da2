"""Error taxonomy for the device session and transaction pipeline.

Every error carries:
- kind: machine-checkable ErrorKind
- layer: session, assembly, signing or collaborator
- hint: human-readable remediation
- context: originating component plus network/address/path where known

Only TransportError is retryable, and DeviceSession retries it exactly once.
Assembly-layer errors are caller-input errors and are never retried.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Machine-checkable error kinds."""
    DEVICE_UNAVAILABLE = "device_unavailable"
    TRANSPORT_ERROR = "transport_error"
    SESSION_CLOSING = "session_closing"
    DEVICE_TIMEOUT = "device_timeout"
    ACQUIRE_TIMEOUT = "acquire_timeout"
    DEVICE_LOCKED = "device_locked"
    WRONG_APP = "wrong_app"
    INVALID_ADDRESS = "invalid_address"
    INVALID_DERIVATION_PATH = "invalid_derivation_path"
    INVALID_PARAMETERS = "invalid_parameters"
    UNSUPPORTED_NETWORK = "unsupported_network"
    METHOD_NOT_FOUND = "method_not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RECIPIENT_TOKEN_ACCOUNT_MISSING = "recipient_token_account_missing"
    SOURCE_TOKEN_ACCOUNT_MISSING = "source_token_account_missing"
    MESSAGE_TOO_LARGE = "message_too_large"
    SIGNATURE_MISMATCH = "signature_mismatch"
    STALE_TRANSACTION = "stale_transaction"
    USER_REJECTED = "user_rejected"
    CHAIN_STATE_UNAVAILABLE = "chain_state_unavailable"


class ErrorLayer(str, Enum):
    """Pipeline layer an error originates from."""
    SESSION = "session"
    ASSEMBLY = "assembly"
    SIGNING = "signing"
    COLLABORATOR = "collaborator"


class HWBridgeError(Exception):
    """Base error for the hwbridge pipeline."""

    kind: ErrorKind = ErrorKind.INVALID_PARAMETERS
    layer: ErrorLayer = ErrorLayer.ASSEMBLY
    default_hint: str = ""
    retryable: bool = False
    tears_down_session: bool = False

    def __init__(
        self,
        message: str,
        hint: Optional[str] = None,
        component: Optional[str] = None,
        network: Optional[str] = None,
        address: Optional[str] = None,
        path: Optional[str] = None,
        **extra: Any,
    ):
        self.message = message
        self.hint = hint or self.default_hint
        self.context: dict[str, Any] = {
            k: v
            for k, v in {
                "component": component,
                "network": network,
                "address": address,
                "path": path,
                **extra,
            }.items()
            if v is not None
        }
        super().__init__(message)

    def annotate(self, **context: Any) -> "HWBridgeError":
        """Attach context without overwriting what the origin already set."""
        for key, value in context.items():
            if value is not None:
                self.context.setdefault(key, value)
        return self

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "layer": self.layer.value,
            "message": self.message,
            "hint": self.hint,
            "retryable": self.retryable,
            "context": dict(self.context),
        }

    def __str__(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        if details:
            return f"{self.message} ({details})"
        return self.message


# ======================
# Session layer
# ======================


class DeviceUnavailable(HWBridgeError):
    """Device could not be opened after the configured attempts."""
    kind = ErrorKind.DEVICE_UNAVAILABLE
    layer = ErrorLayer.SESSION
    default_hint = "Connect and unlock the device, then retry"


class TransportError(DeviceUnavailable):
    """Transport-level fault: device unplugged, stale handle, I/O failure."""
    kind = ErrorKind.TRANSPORT_ERROR
    default_hint = "Reconnect device"
    retryable = True
    tears_down_session = True


class SessionClosing(HWBridgeError):
    """Request arrived after close() started."""
    kind = ErrorKind.SESSION_CLOSING
    layer = ErrorLayer.SESSION
    default_hint = "Session is shutting down; open a new session after close completes"


class DeviceTimeout(HWBridgeError):
    """Device operation exceeded its timeout; the session was torn down."""
    kind = ErrorKind.DEVICE_TIMEOUT
    layer = ErrorLayer.SESSION
    default_hint = "Device did not respond in time; reconnect device and retry"
    tears_down_session = True


class AcquireTimeout(DeviceTimeout):
    """Caller gave up waiting for the device. The device itself is untouched."""
    kind = ErrorKind.ACQUIRE_TIMEOUT
    default_hint = "Device is busy with another request; retry later or raise the timeout"
    tears_down_session = False


class DeviceLocked(HWBridgeError):
    kind = ErrorKind.DEVICE_LOCKED
    layer = ErrorLayer.SESSION
    default_hint = "Unlock the device with its PIN"


class WrongApp(HWBridgeError):
    kind = ErrorKind.WRONG_APP
    layer = ErrorLayer.SESSION
    default_hint = "Open the matching chain app on the device"


# ======================
# Assembly layer
# ======================


class InvalidAddress(HWBridgeError):
    kind = ErrorKind.INVALID_ADDRESS
    default_hint = "Check the address format for the target network"


class InvalidDerivationPath(HWBridgeError):
    kind = ErrorKind.INVALID_DERIVATION_PATH
    default_hint = "Use a BIP-44 path such as 44'/60'/0'/0/0 (EVM) or 44'/501'/0'/0' (Solana)"


class InvalidParameters(HWBridgeError):
    kind = ErrorKind.INVALID_PARAMETERS
    default_hint = "Check the request parameters"


class UnsupportedNetwork(InvalidParameters):
    kind = ErrorKind.UNSUPPORTED_NETWORK
    default_hint = "Use one of the supported network names"


class MethodNotFound(HWBridgeError):
    kind = ErrorKind.METHOD_NOT_FOUND
    default_hint = "Check the method name against the contract ABI"


class InsufficientBalance(HWBridgeError):
    """Balance cannot cover the transaction.

    shortfall is "amount" when the transfer value alone exceeds the balance,
    "fee" when the value fits but value + fees does not, and "token" when the
    token balance is short.
    """
    kind = ErrorKind.INSUFFICIENT_BALANCE

    _HINTS = {
        "amount": "Insufficient balance for the transfer amount; reduce the amount",
        "fee": "Insufficient balance for amount + fee; reduce the amount or top up for fees",
        "token": "Insufficient token balance; reduce the amount",
    }

    def __init__(self, message: str, shortfall: str, required: int, available: int, **kwargs):
        self.shortfall = shortfall
        self.required = required
        self.available = available
        kwargs.setdefault("hint", self._HINTS.get(shortfall))
        super().__init__(
            message, shortfall=shortfall, required=required, available=available, **kwargs
        )


class RecipientTokenAccountMissing(HWBridgeError):
    kind = ErrorKind.RECIPIENT_TOKEN_ACCOUNT_MISSING
    default_hint = "Recipient has no token account; retry with create_recipient_account=True"


class SourceTokenAccountMissing(HWBridgeError):
    kind = ErrorKind.SOURCE_TOKEN_ACCOUNT_MISSING
    default_hint = "Sender holds no token account for this mint; nothing to transfer from"


class MessageTooLarge(HWBridgeError):
    kind = ErrorKind.MESSAGE_TOO_LARGE
    default_hint = "Message exceeds device signing limit, reduce instruction count"

    def __init__(self, message: str, size: int, limit: int, **kwargs):
        self.size = size
        self.limit = limit
        super().__init__(message, size=size, limit=limit, **kwargs)


# ======================
# Signing layer
# ======================


class SignatureMismatch(HWBridgeError):
    """Returned signature does not verify; device/app/path inconsistency."""
    kind = ErrorKind.SIGNATURE_MISMATCH
    layer = ErrorLayer.SIGNING
    default_hint = "Device, app or derivation path mismatch; verify the path and reconnect device"
    tears_down_session = True


class StaleTransaction(HWBridgeError):
    kind = ErrorKind.STALE_TRANSACTION
    layer = ErrorLayer.SIGNING
    default_hint = "Nonce or blockhash expired; rebuild the transaction and sign again"


class UserRejected(HWBridgeError):
    kind = ErrorKind.USER_REJECTED
    layer = ErrorLayer.SIGNING
    default_hint = "Request was rejected on the device"


# ======================
# Collaborator layer
# ======================


class ChainStateUnavailable(HWBridgeError):
    """A chain-state or broadcast query failed."""
    kind = ErrorKind.CHAIN_STATE_UNAVAILABLE
    layer = ErrorLayer.COLLABORATOR
    default_hint = "RPC endpoint unavailable; check connectivity or the configured RPC URL"

    def __init__(self, message: str, operation: str, **kwargs):
        self.operation = operation
        super().__init__(message, operation=operation, **kwargs)
