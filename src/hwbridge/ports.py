"""Collaborator interfaces consumed by the pipeline.

ChainStatePort supplies live chain state to the resolver and assemblers.
BroadcastPort is used by callers (and SigningPipeline) to publish signed
transactions. Implementations raise ChainStateUnavailable with the failing
operation name; see hwbridge.chainstate for JSON-RPC implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from hwbridge.models import TxStatus


@dataclass(frozen=True)
class FeeEstimate:
    """Raw fee data from the chain; fields unused by a fee model stay None."""
    base_fee_per_gas: Optional[int] = None
    priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None
    lamports_per_signature: Optional[int] = None
    priority_fee_micro_lamports: Optional[int] = None


@dataclass(frozen=True)
class BlockhashInfo:
    blockhash: str
    last_valid_block_height: Optional[int] = None


@dataclass(frozen=True)
class TokenAccount:
    """Associated token account lookup result (amount in base units)."""
    address: str
    exists: bool
    amount: Optional[int] = None


@dataclass(frozen=True)
class TokenMetadata:
    decimals: int
    symbol: Optional[str] = None


class ChainStatePort(ABC):
    """Read-only chain state used during assembly.

    The six core queries are abstract. The remaining queries have defaults
    that raise NotImplementedError; callers treat that the same as an
    unavailable estimate and fall back to static defaults.
    """

    @abstractmethod
    async def get_nonce_or_sequence(self, address: str, network: str) -> int:
        """Pending transaction count for an EVM account."""

    @abstractmethod
    async def get_fee_estimate(self, network: str) -> FeeEstimate:
        """Current fee data for a network."""

    @abstractmethod
    async def get_balance(self, address: str, network: str) -> int:
        """Native balance in base units (wei / lamports)."""

    @abstractmethod
    async def get_latest_blockhash(self, network: str) -> BlockhashInfo:
        """Recent blockhash (Solana)."""

    @abstractmethod
    async def get_token_account(self, owner: str, mint: str, network: str) -> TokenAccount:
        """Associated token account of owner for mint (Solana)."""

    @abstractmethod
    async def get_abi(self, contract: str, network: str) -> list[dict]:
        """Contract ABI (EVM)."""

    async def estimate_gas(self, tx: dict, network: str) -> int:
        raise NotImplementedError

    async def get_token_metadata(self, token: str, network: str) -> TokenMetadata:
        raise NotImplementedError

    async def get_token_balance(self, owner: str, token: str, network: str) -> int:
        raise NotImplementedError

    async def get_rent_exempt_minimum(self, data_size: int, network: str) -> int:
        raise NotImplementedError

    async def estimate_compute_units(self, message: bytes, network: str) -> int:
        raise NotImplementedError


class BroadcastPort(ABC):
    """Publishes signed transactions."""

    @abstractmethod
    async def submit(self, raw: bytes, network: str) -> str:
        """Submit raw signed bytes, returning the transaction id."""

    @abstractmethod
    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        """Current status of a submitted transaction."""
