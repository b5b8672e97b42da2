"""Simulated hardware device.

Derives keys from a BIP-39 mnemonic exactly as a hardware wallet does:
- EVM: BIP-32 secp256k1, signs keccak256(message), returns r || s || v
- Solana: SLIP-10 ed25519, signs the raw message bytes

Used for development without a device and in tests. Fault injection knobs
(open latency, failing opens, transport faults, user rejection, hangs) let
callers exercise DeviceSession recovery paths.
"""

import asyncio
import logging
from typing import Optional

from bip_utils import Bip32Secp256k1, Bip32Slip10Ed25519, Bip39SeedGenerator
from eth_keys import keys
from eth_utils import keccak
from solders.keypair import Keypair

from hwbridge.chains import ChainFamily
from hwbridge.derivation import DerivationPath
from hwbridge.device.base import DeviceAddress, DeviceHandle, DeviceStatusError, DeviceTransport
from hwbridge.device.status import SW_LOCKED, SW_USER_REJECTED
from hwbridge.errors import InvalidDerivationPath, TransportError

logger = logging.getLogger(__name__)

# Standard BIP-39 test vector mnemonic (never use with real funds)
TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


class SimulatedDeviceHandle(DeviceHandle):
    """Open connection to a SimulatedDeviceTransport."""

    def __init__(self, transport: "SimulatedDeviceTransport"):
        self._transport = transport
        self.closed = False

    def _check(self, operation: str) -> None:
        transport = self._transport
        if self.closed:
            raise TransportError(f"Device handle closed ({operation})", component="simulated_device")
        if transport.fail_next_ops > 0:
            transport.fail_next_ops -= 1
            raise TransportError(f"Simulated disconnect during {operation}", component="simulated_device")
        if transport.locked:
            raise DeviceStatusError(SW_LOCKED)

    async def _maybe_hang(self) -> None:
        if self._transport.op_delay:
            await asyncio.sleep(self._transport.op_delay)

    async def get_address(self, path: DerivationPath, display: bool = False) -> DeviceAddress:
        self._check("get_address")
        await self._maybe_hang()
        self._transport.address_calls += 1
        return self._transport.derive_address(path)

    async def sign(self, path: DerivationPath, message: bytes) -> bytes:
        self._check("sign")
        await self._maybe_hang()
        transport = self._transport
        if transport.reject_next:
            transport.reject_next = False
            raise DeviceStatusError(SW_USER_REJECTED)

        transport.sign_calls += 1
        transport.signed_messages.append(bytes(message))
        sign_path = transport.wrong_key_path or path
        return transport.sign_with(sign_path, message, family=path.family)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._transport.close_count += 1


class SimulatedDeviceTransport(DeviceTransport):
    """In-process device backed by a mnemonic.

    Attributes:
        open_delay: Seconds each open() takes
        fail_opens: Number of upcoming open() calls that fail
        fail_next_ops: Number of upcoming handle calls that raise TransportError
        reject_next: Next sign() fails with the user-rejected status word
        locked: Handle calls fail with the device-locked status word
        op_delay: Seconds each handle call takes (simulates waiting on the user)
        wrong_key_path: Sign with this path's key instead (simulates app/path mismatch)
    """

    def __init__(self, mnemonic: Optional[str] = None, open_delay: float = 0.0):
        self._seed = Bip39SeedGenerator(mnemonic or TEST_MNEMONIC).Generate()
        self.open_delay = open_delay
        self.fail_opens = 0
        self.fail_next_ops = 0
        self.reject_next = False
        self.locked = False
        self.op_delay = 0.0
        self.wrong_key_path: Optional[DerivationPath] = None

        self.open_count = 0
        self.close_count = 0
        self.sign_calls = 0
        self.address_calls = 0
        self.signed_messages: list[bytes] = []
        self.handles: list[SimulatedDeviceHandle] = []

    async def open(self) -> DeviceHandle:
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if self.fail_opens > 0:
            self.fail_opens -= 1
            raise TransportError("Simulated device not found", component="simulated_device")

        self.open_count += 1
        handle = SimulatedDeviceHandle(self)
        self.handles.append(handle)
        logger.debug(f"Simulated device opened ({self.open_count} total)")
        return handle

    def unplug(self) -> None:
        """Invalidate every open handle, as pulling the cable would."""
        for handle in self.handles:
            handle.closed = True

    # ======================
    # Key derivation
    # ======================

    def _evm_key(self, path: DerivationPath) -> keys.PrivateKey:
        ctx = Bip32Secp256k1.FromSeed(self._seed).DerivePath(str(path))
        return keys.PrivateKey(ctx.PrivateKey().Raw().ToBytes())

    def _solana_keypair(self, path: DerivationPath) -> Keypair:
        ctx = Bip32Slip10Ed25519.FromSeed(self._seed).DerivePath(str(path))
        return Keypair.from_seed(ctx.PrivateKey().Raw().ToBytes())

    def _family(self, path: DerivationPath) -> ChainFamily:
        family = path.family
        if family is None:
            raise InvalidDerivationPath(
                "Unsupported coin type for simulated device",
                component="simulated_device",
                path=str(path),
            )
        return family

    def derive_address(self, path: DerivationPath) -> DeviceAddress:
        if self._family(path) == ChainFamily.EVM:
            private_key = self._evm_key(path)
            return DeviceAddress(
                address=private_key.public_key.to_checksum_address(),
                public_key=private_key.public_key.to_bytes(),
            )
        keypair = self._solana_keypair(path)
        return DeviceAddress(address=str(keypair.pubkey()), public_key=bytes(keypair.pubkey()))

    def sign_with(self, path: DerivationPath, message: bytes, family: Optional[ChainFamily] = None) -> bytes:
        family = family or self._family(path)
        if family == ChainFamily.EVM:
            signature = self._evm_key(path).sign_msg_hash(keccak(message))
            return (
                signature.r.to_bytes(32, "big")
                + signature.s.to_bytes(32, "big")
                + bytes([signature.v])
            )
        return bytes(self._solana_keypair(path).sign_message(message))
