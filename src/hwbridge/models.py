"""Transaction intents and the prepared/signed transaction values.

UnsignedIntent is a tagged variant:
- NativeTransfer
- FungibleTokenTransfer (ERC-20 / SPL)
- FungibleTokenApprove (ERC-20 approve / SPL delegate)
- ContractCall (EVM only)

Amounts are human units (Decimal); assemblers convert to base units with
the chain's or token's decimals.
"""

import base64
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from hwbridge.chains import ChainFamily
from hwbridge.errors import InvalidParameters


# ======================
# Fee fields
# ======================


@dataclass(frozen=True)
class Eip1559Fees:
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @property
    def ceiling(self) -> int:
        """Highest price per gas unit the sender may pay."""
        return self.max_fee_per_gas


@dataclass(frozen=True)
class LegacyFees:
    gas_price: int

    @property
    def ceiling(self) -> int:
        return self.gas_price


@dataclass(frozen=True)
class SolanaFees:
    base_fee_lamports: int
    priority_fee_micro_lamports: Optional[int] = None

    def total_lamports(self, compute_unit_limit: int) -> int:
        """Base fee plus priority fee for the given compute unit limit."""
        priority = 0
        if self.priority_fee_micro_lamports:
            # micro-lamports per CU, rounded up
            priority = -(-self.priority_fee_micro_lamports * compute_unit_limit // 1_000_000)
        return self.base_fee_lamports + priority


FeeFields = Union[Eip1559Fees, LegacyFees, SolanaFees]


@dataclass(frozen=True)
class FeeQuote:
    """Resolved fee fields plus whether they came from a static fallback."""
    fees: FeeFields
    estimated: bool = False


# ======================
# Intents
# ======================


@dataclass(frozen=True, kw_only=True)
class IntentBase:
    """Fields shared by every intent.

    Attributes:
        network: Network name (see chains.CHAIN_PROFILES)
        sender: Sender address; resolved from the device when omitted
        nonce: Explicit EVM nonce (caller's responsibility when set)
        fees: Explicit fee fields, must match the network fee model
        gas_limit: Explicit EVM gas limit
        compute_units: Explicit Solana compute unit limit
        priority_fee: Solana priority fee in micro-lamports per compute unit
        memo: Solana memo instruction text
    """
    network: str
    sender: Optional[str] = None
    nonce: Optional[int] = None
    fees: Optional[FeeFields] = None
    gas_limit: Optional[int] = None
    compute_units: Optional[int] = None
    priority_fee: Optional[int] = None
    memo: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class NativeTransfer(IntentBase):
    to: str
    amount: Decimal


@dataclass(frozen=True, kw_only=True)
class FungibleTokenTransfer(IntentBase):
    token: str  # ERC-20 contract or SPL mint
    to: str  # recipient owner (wallet) address
    amount: Decimal
    decimals: Optional[int] = None
    create_recipient_account: bool = False


@dataclass(frozen=True, kw_only=True)
class FungibleTokenApprove(IntentBase):
    token: str
    spender: str
    amount: Decimal
    decimals: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class ContractCall(IntentBase):
    contract: str
    method: str
    args: tuple = ()
    abi: Optional[list[dict]] = None
    value: Decimal = Decimal("0")


UnsignedIntent = Union[NativeTransfer, FungibleTokenTransfer, FungibleTokenApprove, ContractCall]


# ======================
# Prepared / Signed
# ======================


@dataclass(frozen=True)
class PreparedTransaction:
    """Fully resolved, not-yet-signed transaction.

    message_bytes is exactly what the device signs: the EIP-2718/EIP-155
    unsigned payload on EVM, the serialized message on Solana.
    """
    network: str
    family: ChainFamily
    sender: str
    to: str
    value: int
    payload: bytes
    fees: FeeFields
    message_bytes: bytes
    nonce: Optional[int] = None
    gas_limit: Optional[int] = None
    compute_unit_limit: Optional[int] = None
    chain_id: Optional[int] = None
    blockhash: Optional[str] = None
    last_valid_block_height: Optional[int] = None
    valid_until: Optional[float] = None  # loop.time() deadline for the blockhash
    fee_estimated: bool = False
    gas_estimated: bool = False
    nonce_overridden: bool = False
    signer_index: int = 0
    instructions: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def message_size(self) -> int:
        return len(self.message_bytes)

    def to_dict(self) -> dict:
        fees = {k: v for k, v in vars(self.fees).items()}
        return {
            "network": self.network,
            "family": self.family.value,
            "from": self.sender,
            "to": self.to,
            "value": str(self.value),
            "payload": "0x" + self.payload.hex(),
            "nonce": self.nonce,
            "fees": fees,
            "fee_estimated": self.fee_estimated,
            "gas_limit": self.gas_limit,
            "compute_unit_limit": self.compute_unit_limit,
            "chain_id": self.chain_id,
            "blockhash": self.blockhash,
            "message_size": self.message_size,
            "instructions": list(self.instructions),
        }


@dataclass(frozen=True)
class SignedTransaction:
    """Prepared transaction with its signature and broadcastable bytes."""
    prepared: PreparedTransaction
    signature: bytes
    raw: bytes
    tx_id: str
    v: Optional[int] = None
    r: Optional[int] = None
    s: Optional[int] = None

    @property
    def raw_hex(self) -> str:
        return "0x" + self.raw.hex()

    @property
    def raw_base64(self) -> str:
        return base64.b64encode(self.raw).decode()

    def serialize_for_broadcast(self) -> str:
        """Encoding the chain's submit RPC expects."""
        if self.prepared.family == ChainFamily.SOLANA:
            return self.raw_base64
        return self.raw_hex


@dataclass(frozen=True)
class TxStatus:
    tx_id: str
    status: str  # pending, confirmed, finalized, failed, not_found
    block: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status in ("confirmed", "finalized", "failed")


def to_base_units(amount: Union[Decimal, str, int], decimals: int, allow_zero: bool = False) -> int:
    """Convert a human amount to integer base units.

    Raises:
        InvalidParameters: if the amount is not a number, negative, zero (unless
            allowed) or has more fractional digits than decimals
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidParameters(f"Invalid amount: {amount}", component="models") from e

    if not value.is_finite() or value < 0 or (value == 0 and not allow_zero):
        raise InvalidParameters(f"Amount must be positive: {amount}", component="models")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidParameters(
            f"Amount {amount} has more than {decimals} decimal places",
            component="models",
        )
    return int(scaled)
