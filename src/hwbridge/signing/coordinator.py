"""Drive the device to sign a PreparedTransaction.

Signing flow:
1. Reject stale transactions (consumed EVM nonce, expired Solana blockhash)
2. Inside one exclusive device session: derive the address for the path,
   sign prepared.message_bytes, verify the signature against that key
3. Merge the signature into the chain's wire format and compute the tx id

Signatures are verified inside the exclusive section so a SignatureMismatch
tears the device session down before anyone else uses it. User rejections
are terminal and never retried.
"""

import logging
import time
from typing import Callable, Optional, Union

import rlp
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from hwbridge.chains import ChainFamily
from hwbridge.derivation import DerivationPath, parse_path
from hwbridge.device.base import DeviceAddress
from hwbridge.device.session import DeviceSession, SessionHandle
from hwbridge.errors import InvalidDerivationPath, SignatureMismatch, StaleTransaction
from hwbridge.models import PreparedTransaction, SignedTransaction
from hwbridge.ports import ChainStatePort

logger = logging.getLogger(__name__)

EIP1559_TX_TYPE = 0x02


def split_evm_signature(signature: bytes) -> tuple[int, int, int]:
    """Split r || s || v into (recovery id, r, s). v may be 0/1 or 27/28."""
    if len(signature) != 65:
        raise SignatureMismatch(
            f"EVM signature must be 65 bytes, got {len(signature)}",
            component="SigningCoordinator",
        )
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    recovery_id = v - 27 if v >= 27 else v
    if recovery_id not in (0, 1):
        raise SignatureMismatch(f"Invalid recovery id {v}", component="SigningCoordinator")
    return recovery_id, r, s


def recover_evm_address(message: bytes, recovery_id: int, r: int, s: int) -> Optional[str]:
    """Checksummed signer address for the signature, or None if unrecoverable."""
    try:
        signature = keys.Signature(vrs=(recovery_id, r, s))
        public_key = signature.recover_public_key_from_msg_hash(keccak(message))
    except (BadSignature, ValidationError, ValueError):
        return None
    return public_key.to_checksum_address()


def merge_evm_signature(message: bytes, recovery_id: int, r: int, s: int) -> tuple[bytes, int]:
    """Raw signed transaction and its v value.

    The signed encoding reuses the decoded unsigned fields byte-for-byte.
    """
    if message[0] == EIP1559_TX_TYPE:
        fields = rlp.decode(message[1:])
        return bytes([EIP1559_TX_TYPE]) + rlp.encode(list(fields) + [recovery_id, r, s]), recovery_id

    fields = rlp.decode(message)
    chain_id = int.from_bytes(fields[6], "big")
    v = recovery_id + 35 + 2 * chain_id
    return rlp.encode(list(fields[:6]) + [v, r, s]), v


def extract_signed_message(raw: bytes, family: ChainFamily) -> bytes:
    """Recover the exact message a raw signed transaction commits to."""
    if family == ChainFamily.SOLANA:
        return bytes(Transaction.from_bytes(raw).message)

    if raw[0] == EIP1559_TX_TYPE:
        fields = rlp.decode(raw[1:])
        return bytes([EIP1559_TX_TYPE]) + rlp.encode(list(fields[:-3]))

    fields = rlp.decode(raw)
    v = int.from_bytes(fields[6], "big")
    chain_id = (v - 35) // 2
    return rlp.encode(list(fields[:6]) + [chain_id, 0, 0])


class SigningCoordinator:
    """Signs prepared transactions through the shared DeviceSession."""

    def __init__(
        self,
        session: DeviceSession,
        chain_state: Optional[ChainStatePort] = None,
        acquire_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.chain_state = chain_state
        self.acquire_timeout = acquire_timeout
        self._clock = clock
        # (connection generation, path) -> address; replaced wholesale
        self._address_cache: dict[tuple[int, str], DeviceAddress] = {}

    async def get_address(
        self,
        path: Union[str, DerivationPath],
        family: Optional[ChainFamily] = None,
        display: bool = False,
    ) -> DeviceAddress:
        """Address and public key the device derives for path."""
        path = self._coerce_path(path, family)

        async def op(handle: SessionHandle) -> DeviceAddress:
            return await self._address_for(handle, path, display)

        return await self.session.run_exclusive(
            op, timeout=self.acquire_timeout, operation=f"get_address {path}"
        )

    async def sign(self, prepared: PreparedTransaction, path: Union[str, DerivationPath]) -> SignedTransaction:
        """Sign prepared with the key at path.

        Raises:
            StaleTransaction: nonce consumed or blockhash window expired
            InvalidDerivationPath: path does not derive prepared.sender
            SignatureMismatch: device signature does not verify
            UserRejected: request declined on the device
        """
        path = self._coerce_path(path, prepared.family)
        await self._check_fresh(prepared)

        async def op(handle: SessionHandle) -> bytes:
            address = await self._address_for(handle, path)
            if address.address != prepared.sender:
                raise InvalidDerivationPath(
                    f"Path derives {address.address}, transaction is from {prepared.sender}",
                    hint="Use the derivation path of the sending account",
                    component="SigningCoordinator",
                    network=prepared.network,
                    path=str(path),
                )
            signature = await handle.sign(path, prepared.message_bytes)
            self._verify(prepared, signature, path)
            return signature

        logger.info(f"Signing {prepared.family.value} transaction on {prepared.network} at {path}")
        signature = await self.session.run_exclusive(
            op, timeout=self.acquire_timeout, operation=f"sign {prepared.network}"
        )

        # The user may take longer than the blockhash lifetime to confirm.
        self._check_window(prepared)

        signed = self._assemble(prepared, signature)
        logger.info(f"Signed transaction {signed.tx_id} on {prepared.network}")
        return signed

    # ======================
    # Internals
    # ======================

    @staticmethod
    def _coerce_path(path: Union[str, DerivationPath], family: Optional[ChainFamily]) -> DerivationPath:
        if isinstance(path, str):
            return parse_path(path, family)
        if family is not None:
            path.validate_for(family)
        return path

    async def _address_for(
        self,
        handle: SessionHandle,
        path: DerivationPath,
        display: bool = False,
    ) -> DeviceAddress:
        key = (handle.generation, str(path))
        cached = self._address_cache.get(key)
        if cached is not None and not display:
            return cached

        address = await handle.get_address(path, display)
        # Entries from older connections may belong to a different device.
        fresh = {k: v for k, v in self._address_cache.items() if k[0] == handle.generation}
        fresh[key] = address
        self._address_cache = fresh
        return address

    async def _check_fresh(self, prepared: PreparedTransaction) -> None:
        if prepared.family == ChainFamily.SOLANA:
            self._check_window(prepared)
            return

        if self.chain_state is None or prepared.nonce_overridden:
            return
        pending = await self.chain_state.get_nonce_or_sequence(prepared.sender, prepared.network)
        if pending > prepared.nonce:
            raise StaleTransaction(
                f"Nonce {prepared.nonce} already used (pending count {pending})",
                component="SigningCoordinator",
                network=prepared.network,
                address=prepared.sender,
            )

    def _check_window(self, prepared: PreparedTransaction) -> None:
        if prepared.valid_until is not None and self._clock() > prepared.valid_until:
            raise StaleTransaction(
                f"Blockhash {prepared.blockhash} validity window expired",
                component="SigningCoordinator",
                network=prepared.network,
                address=prepared.sender,
            )

    def _verify(self, prepared: PreparedTransaction, signature: bytes, path: DerivationPath) -> None:
        if prepared.family == ChainFamily.EVM:
            recovery_id, r, s = split_evm_signature(signature)
            signer = recover_evm_address(prepared.message_bytes, recovery_id, r, s)
            valid = signer == prepared.sender
        else:
            valid = len(signature) == 64 and Signature.from_bytes(signature).verify(
                Pubkey.from_string(prepared.sender), prepared.message_bytes
            )

        if not valid:
            logger.error(f"Signature from device does not verify for {prepared.sender} at {path}")
            raise SignatureMismatch(
                "Device signature does not verify against the sender key",
                component="SigningCoordinator",
                network=prepared.network,
                address=prepared.sender,
                path=str(path),
            )

    @staticmethod
    def _assemble(prepared: PreparedTransaction, signature: bytes) -> SignedTransaction:
        if prepared.family == ChainFamily.EVM:
            recovery_id, r, s = split_evm_signature(signature)
            raw, v = merge_evm_signature(prepared.message_bytes, recovery_id, r, s)
            return SignedTransaction(
                prepared=prepared,
                signature=signature,
                raw=raw,
                tx_id="0x" + keccak(raw).hex(),
                v=v,
                r=r,
                s=s,
            )

        message = Message.from_bytes(prepared.message_bytes)
        sig = Signature.from_bytes(signature)
        signatures = [Signature.default()] * message.header.num_required_signatures
        signatures[prepared.signer_index] = sig
        raw = bytes(Transaction.populate(message, signatures))
        return SignedTransaction(prepared=prepared, signature=signature, raw=raw, tx_id=str(sig))
