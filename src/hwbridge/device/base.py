"""Device transport capability interfaces.

The device is an opaque capability: "give me the address at this path" and
"sign these bytes at this path". The USB/HID transport itself lives outside
this package; implementations adapt it to these interfaces.

Signature formats returned by DeviceHandle.sign:
- EVM: 65 bytes, r (32) || s (32) || recovery id (1, 0/1 or 27/28)
- Solana: 64-byte ed25519 signature
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from hwbridge.derivation import DerivationPath


@dataclass(frozen=True)
class DeviceAddress:
    """Address and public key the device derives for a path.

    Attributes:
        address: Checksummed EVM address or base58 Solana address
        public_key: Uncompressed secp256k1 key (64 bytes, no prefix) or
            32-byte ed25519 key
    """
    address: str
    public_key: bytes


class DeviceStatusError(Exception):
    """Device answered with a non-success status word."""

    def __init__(self, status_word: int, message: str = ""):
        self.status_word = status_word
        super().__init__(message or f"Device returned status 0x{status_word:04x}")


class DeviceHandle(ABC):
    """An open connection to the device app.

    Implementations raise TransportError for I/O faults and DeviceStatusError
    for status words; DeviceSession classifies the latter.
    """

    @abstractmethod
    async def get_address(self, path: DerivationPath, display: bool = False) -> DeviceAddress:
        pass

    @abstractmethod
    async def sign(self, path: DerivationPath, message: bytes) -> bytes:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class DeviceTransport(ABC):
    """Opens connections to the physical (or simulated) device."""

    @abstractmethod
    async def open(self) -> DeviceHandle:
        """Open a handle.

        Raises:
            TransportError: if the device cannot be reached
        """
        pass
