"""EVM chain state and broadcast over JSON-RPC.

Nonces come from eth_getTransactionCount(address, "pending"). Contract ABIs
are fetched from the network's Blockscout API.
"""

import json
import logging
from typing import Optional

import httpx
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError

from hwbridge.chains import FeeModel, get_profile
from hwbridge.chainstate.jsonrpc import JsonRpcClient, hex_to_int
from hwbridge.config import get_settings
from hwbridge.errors import ChainStateUnavailable, InvalidParameters
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

# ERC-20 read selectors
DECIMALS_SELECTOR = "0x313ce567"  # decimals()
SYMBOL_SELECTOR = "0x95d89b41"  # symbol()
BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)


class EvmRpcChainState(ChainStatePort, BroadcastPort):
    """ChainStatePort and BroadcastPort for EVM networks."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._rpcs: dict[str, JsonRpcClient] = {}

    def _rpc(self, network: str) -> JsonRpcClient:
        rpc = self._rpcs.get(network)
        if rpc is None:
            settings = get_settings()
            rpc = JsonRpcClient(
                settings.get_rpc_url(network),
                network=network,
                timeout=settings.rpc_timeout,
                client=self._client,
            )
            self._rpcs = {**self._rpcs, network: rpc}
        return rpc

    async def get_nonce_or_sequence(self, address: str, network: str) -> int:
        result = await self._rpc(network).call(
            "eth_getTransactionCount", [address, "pending"], operation="get_nonce_or_sequence"
        )
        return hex_to_int(result)

    async def get_fee_estimate(self, network: str) -> FeeEstimate:
        rpc = self._rpc(network)
        if get_profile(network).fee_model == FeeModel.LEGACY:
            gas_price = await rpc.call("eth_gasPrice", operation="get_fee_estimate")
            return FeeEstimate(gas_price=hex_to_int(gas_price))

        block = await rpc.call("eth_getBlockByNumber", ["latest", False], operation="get_fee_estimate")
        if not block or block.get("baseFeePerGas") is None:
            raise ChainStateUnavailable(
                "Latest block has no baseFeePerGas",
                operation="get_fee_estimate",
                component="EvmRpcChainState",
                network=network,
            )

        try:
            priority = hex_to_int(
                await rpc.call("eth_maxPriorityFeePerGas", operation="get_fee_estimate")
            )
        except ChainStateUnavailable as e:
            logger.warning(f"eth_maxPriorityFeePerGas unavailable on {network}: {e}")
            priority = None

        return FeeEstimate(base_fee_per_gas=hex_to_int(block["baseFeePerGas"]), priority_fee_per_gas=priority)

    async def get_balance(self, address: str, network: str) -> int:
        result = await self._rpc(network).call("eth_getBalance", [address, "latest"], operation="get_balance")
        return hex_to_int(result)

    async def get_latest_blockhash(self, network: str) -> BlockhashInfo:
        block = await self._rpc(network).call(
            "eth_getBlockByNumber", ["latest", False], operation="get_latest_blockhash"
        )
        return BlockhashInfo(blockhash=block["hash"], last_valid_block_height=hex_to_int(block["number"]))

    async def get_token_account(self, owner: str, mint: str, network: str) -> TokenAccount:
        # ERC-20 balances live in the token contract; every owner "has" an account.
        balance = await self.get_token_balance(owner, mint, network)
        return TokenAccount(address=owner, exists=True, amount=balance)

    async def get_abi(self, contract: str, network: str) -> list[dict]:
        settings = get_settings()
        base_url = settings.get_blockscout_url(network)
        if not base_url:
            raise ChainStateUnavailable(
                f"No ABI service for {network}",
                operation="get_abi",
                component="EvmRpcChainState",
                network=network,
            )

        params = {"module": "contract", "action": "getabi", "address": contract}
        if settings.blockscout_api_key:
            params["apikey"] = settings.blockscout_api_key

        try:
            if self._client is not None:
                response = await self._client.get(base_url, params=params, timeout=settings.rpc_timeout)
            else:
                async with httpx.AsyncClient(timeout=settings.rpc_timeout) as client:
                    response = await client.get(base_url, params=params)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ChainStateUnavailable(
                f"ABI lookup failed: {e}",
                operation="get_abi",
                component="EvmRpcChainState",
                network=network,
                address=contract,
            ) from e

        if data.get("status") != "1":
            raise ChainStateUnavailable(
                f"ABI not available for {contract}: {data.get('message') or data.get('result')}",
                hint="Contract may be unverified; pass the ABI explicitly",
                operation="get_abi",
                component="EvmRpcChainState",
                network=network,
                address=contract,
            )
        return json.loads(data["result"])

    async def estimate_gas(self, tx: dict, network: str) -> int:
        result = await self._rpc(network).call("eth_estimateGas", [tx], operation="estimate_gas")
        return hex_to_int(result)

    async def get_token_metadata(self, token: str, network: str) -> TokenMetadata:
        rpc = self._rpc(network)
        raw = await rpc.call(
            "eth_call", [{"to": token, "data": DECIMALS_SELECTOR}, "latest"], operation="get_token_metadata"
        )
        decimals = hex_to_int(raw)

        symbol = None
        try:
            raw_symbol = await rpc.call(
                "eth_call", [{"to": token, "data": SYMBOL_SELECTOR}, "latest"], operation="get_token_metadata"
            )
            (symbol,) = abi_decode(["string"], bytes.fromhex(raw_symbol[2:]))
        except (ChainStateUnavailable, DecodingError, ValueError, TypeError) as e:
            logger.debug(f"No string symbol for {token} on {network}: {e}")

        return TokenMetadata(decimals=decimals, symbol=symbol)

    async def get_token_balance(self, owner: str, token: str, network: str) -> int:
        data = BALANCE_OF_SELECTOR + abi_encode(["address"], [owner]).hex()
        result = await self._rpc(network).call(
            "eth_call", [{"to": token, "data": data}, "latest"], operation="get_token_balance"
        )
        return hex_to_int(result)

    async def get_rent_exempt_minimum(self, data_size: int, network: str) -> int:
        raise InvalidParameters("EVM networks have no rent", component="EvmRpcChainState", network=network)

    # ======================
    # Broadcast
    # ======================

    async def submit(self, raw: bytes, network: str) -> str:
        tx_hash = await self._rpc(network).call(
            "eth_sendRawTransaction", ["0x" + raw.hex()], operation="submit"
        )
        logger.info(f"Broadcast {tx_hash} on {network}")
        return tx_hash

    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        receipt = await self._rpc(network).call("eth_getTransactionReceipt", [tx_id], operation="confirm")
        if receipt is None:
            return TxStatus(tx_id=tx_id, status="pending")
        status = "confirmed" if hex_to_int(receipt.get("status")) == 1 else "failed"
        return TxStatus(
            tx_id=tx_id,
            status=status,
            block=hex_to_int(receipt.get("blockNumber")),
            error="execution reverted" if status == "failed" else None,
        )
