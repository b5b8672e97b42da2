"""Solana chain state and broadcast over JSON-RPC."""

import base64
import logging
import statistics
from typing import Optional

import httpx
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.instructions import get_associated_token_address

from hwbridge.chains import get_profile
from hwbridge.chainstate.jsonrpc import JsonRpcClient
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

COMMITMENT = {"commitment": "confirmed"}


class SolanaRpcChainState(ChainStatePort, BroadcastPort):
    """ChainStatePort and BroadcastPort for Solana clusters."""

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
        raise InvalidParameters(
            "Solana accounts have no nonce; transactions use a recent blockhash",
            component="SolanaRpcChainState",
            network=network,
        )

    async def get_fee_estimate(self, network: str) -> FeeEstimate:
        fees = await self._rpc(network).call(
            "getRecentPrioritizationFees", [], operation="get_fee_estimate"
        )
        paid = [entry["prioritizationFee"] for entry in fees or [] if entry.get("prioritizationFee")]
        priority = int(statistics.median(paid)) if paid else None
        return FeeEstimate(
            lamports_per_signature=get_profile(network).lamports_per_signature,
            priority_fee_micro_lamports=priority,
        )

    async def get_balance(self, address: str, network: str) -> int:
        result = await self._rpc(network).call("getBalance", [address, COMMITMENT], operation="get_balance")
        return int(result["value"])

    async def get_latest_blockhash(self, network: str) -> BlockhashInfo:
        result = await self._rpc(network).call(
            "getLatestBlockhash", [COMMITMENT], operation="get_latest_blockhash"
        )
        value = result["value"]
        return BlockhashInfo(
            blockhash=value["blockhash"],
            last_valid_block_height=value.get("lastValidBlockHeight"),
        )

    async def get_token_account(self, owner: str, mint: str, network: str) -> TokenAccount:
        ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))
        result = await self._rpc(network).call(
            "getAccountInfo",
            [str(ata), {"encoding": "jsonParsed", **COMMITMENT}],
            operation="get_token_account",
        )
        account = result.get("value") if result else None
        if account is None:
            return TokenAccount(address=str(ata), exists=False)

        data = account.get("data")
        amount = None
        if isinstance(data, dict):
            amount = int(data["parsed"]["info"]["tokenAmount"]["amount"])
        return TokenAccount(address=str(ata), exists=True, amount=amount)

    async def get_abi(self, contract: str, network: str) -> list[dict]:
        raise InvalidParameters(
            "Contract ABIs are not available for Solana programs",
            component="SolanaRpcChainState",
            network=network,
        )

    async def get_token_metadata(self, token: str, network: str) -> TokenMetadata:
        result = await self._rpc(network).call("getTokenSupply", [token], operation="get_token_metadata")
        return TokenMetadata(decimals=int(result["value"]["decimals"]))

    async def get_token_balance(self, owner: str, token: str, network: str) -> int:
        account = await self.get_token_account(owner, token, network)
        return account.amount or 0

    async def get_rent_exempt_minimum(self, data_size: int, network: str) -> int:
        result = await self._rpc(network).call(
            "getMinimumBalanceForRentExemption", [data_size], operation="get_rent_exempt_minimum"
        )
        return int(result)

    async def estimate_compute_units(self, message: bytes, network: str) -> int:
        tx = Transaction.new_unsigned(Message.from_bytes(message))
        result = await self._rpc(network).call(
            "simulateTransaction",
            [
                base64.b64encode(bytes(tx)).decode(),
                {"encoding": "base64", "sigVerify": False, "replaceRecentBlockhash": True, **COMMITMENT},
            ],
            operation="estimate_compute_units",
        )
        value = result["value"]
        if value.get("err") or not value.get("unitsConsumed"):
            raise ChainStateUnavailable(
                f"Simulation failed: {value.get('err')}",
                operation="estimate_compute_units",
                component="SolanaRpcChainState",
                network=network,
            )
        return int(value["unitsConsumed"])

    # ======================
    # Broadcast
    # ======================

    async def submit(self, raw: bytes, network: str) -> str:
        signature = await self._rpc(network).call(
            "sendTransaction",
            [base64.b64encode(raw).decode(), {"encoding": "base64", "preflightCommitment": "confirmed"}],
            operation="submit",
        )
        logger.info(f"Broadcast {signature} on {network}")
        return signature

    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        result = await self._rpc(network).call(
            "getSignatureStatuses",
            [[tx_id], {"searchTransactionHistory": True}],
            operation="confirm",
        )
        status = (result.get("value") or [None])[0]
        if status is None:
            return TxStatus(tx_id=tx_id, status="not_found")
        if status.get("err"):
            return TxStatus(tx_id=tx_id, status="failed", block=status.get("slot"), error=str(status["err"]))
        return TxStatus(
            tx_id=tx_id,
            status=status.get("confirmationStatus") or "pending",
            block=status.get("slot"),
        )
