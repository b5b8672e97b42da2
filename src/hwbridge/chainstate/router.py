"""Dispatch chain-state and broadcast calls by chain family."""

import logging
from typing import Optional

import httpx

from hwbridge.chains import ChainFamily, get_profile
from hwbridge.chainstate.evm_rpc import EvmRpcChainState
from hwbridge.chainstate.solana_rpc import SolanaRpcChainState
from hwbridge.models import TxStatus
from hwbridge.ports import (
    BlockhashInfo,
    BroadcastPort,
    ChainStatePort,
    FeeEstimate,
    TokenAccount,
    TokenMetadata,
)

logger = logging.getLogger(__name__)


class RoutingChainState(ChainStatePort, BroadcastPort):
    """One port for every supported network.

    Example:
        chain_state = RoutingChainState()
        await chain_state.get_balance(address, "base")
        await chain_state.get_balance(pubkey, "solana-devnet")
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._backends: dict[ChainFamily, EvmRpcChainState | SolanaRpcChainState] = {
            ChainFamily.EVM: EvmRpcChainState(client),
            ChainFamily.SOLANA: SolanaRpcChainState(client),
        }

    def backend(self, network: str) -> EvmRpcChainState | SolanaRpcChainState:
        return self._backends[get_profile(network).family]

    async def get_nonce_or_sequence(self, address: str, network: str) -> int:
        return await self.backend(network).get_nonce_or_sequence(address, network)

    async def get_fee_estimate(self, network: str) -> FeeEstimate:
        return await self.backend(network).get_fee_estimate(network)

    async def get_balance(self, address: str, network: str) -> int:
        return await self.backend(network).get_balance(address, network)

    async def get_latest_blockhash(self, network: str) -> BlockhashInfo:
        return await self.backend(network).get_latest_blockhash(network)

    async def get_token_account(self, owner: str, mint: str, network: str) -> TokenAccount:
        return await self.backend(network).get_token_account(owner, mint, network)

    async def get_abi(self, contract: str, network: str) -> list[dict]:
        return await self.backend(network).get_abi(contract, network)

    async def estimate_gas(self, tx: dict, network: str) -> int:
        return await self.backend(network).estimate_gas(tx, network)

    async def get_token_metadata(self, token: str, network: str) -> TokenMetadata:
        return await self.backend(network).get_token_metadata(token, network)

    async def get_token_balance(self, owner: str, token: str, network: str) -> int:
        return await self.backend(network).get_token_balance(owner, token, network)

    async def get_rent_exempt_minimum(self, data_size: int, network: str) -> int:
        return await self.backend(network).get_rent_exempt_minimum(data_size, network)

    async def estimate_compute_units(self, message: bytes, network: str) -> int:
        return await self.backend(network).estimate_compute_units(message, network)

    async def submit(self, raw: bytes, network: str) -> str:
        return await self.backend(network).submit(raw, network)

    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        return await self.backend(network).confirm(tx_id, network)
