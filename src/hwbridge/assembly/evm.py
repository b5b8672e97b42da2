"""EVM transaction assembler.

Builds EIP-1559 (type 0x02) or legacy EIP-155 transactions depending on the
network's fee model. The unsigned RLP payload stored in message_bytes is what
the device signs (keccak256 of it) and what the coordinator later extends
with v/r/s, so the signed bytes never diverge from the assembled ones.
"""

import asyncio
import logging
from typing import Optional

import rlp
from eth_abi import encode as abi_encode
from eth_abi.exceptions import EncodingError
from eth_utils import function_abi_to_4byte_selector
from eth_utils.abi import collapse_if_tuple
from web3 import Web3

from hwbridge.assembly.base import TransactionAssembler
from hwbridge.assembly.resolver import DEFAULT_GAS_LIMITS
from hwbridge.chains import ChainFamily, ChainProfile, FeeModel
from hwbridge.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidParameters,
    MessageTooLarge,
    MethodNotFound,
)
from hwbridge.models import (
    ContractCall,
    Eip1559Fees,
    FeeFields,
    FungibleTokenApprove,
    FungibleTokenTransfer,
    NativeTransfer,
    PreparedTransaction,
    UnsignedIntent,
    to_base_units,
)

logger = logging.getLogger(__name__)

# ERC-20 ABI fragments (minimal for transfers and approvals)
ERC20_TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")  # transfer(address,uint256)
ERC20_APPROVE_SELECTOR = bytes.fromhex("095ea7b3")  # approve(address,uint256)

EIP1559_TX_TYPE = b"\x02"


def validate_evm_address(address: str, field: str = "address", network: Optional[str] = None) -> str:
    """Return the checksummed address or raise InvalidAddress.

    Mixed-case input must carry a valid EIP-55 checksum.
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidAddress(
            f"Invalid {field}: {address}",
            component="EvmTransactionAssembler",
            network=network,
            address=str(address),
        )

    body = address[2:] if address[:2].lower() == "0x" else address
    if body != body.lower() and body != body.upper() and not Web3.is_checksum_address(address):
        raise InvalidAddress(
            f"Invalid {field}: {address} fails the EIP-55 checksum",
            component="EvmTransactionAssembler",
            network=network,
            address=address,
        )
    return Web3.to_checksum_address(address)


def encode_unsigned(
    profile: ChainProfile,
    nonce: int,
    fees: FeeFields,
    gas_limit: int,
    to: str,
    value: int,
    data: bytes,
) -> bytes:
    """Unsigned signing payload for the network's transaction type."""
    to_bytes = bytes.fromhex(to[2:])

    if isinstance(fees, Eip1559Fees):
        fields = [
            profile.chain_id,
            nonce,
            fees.max_priority_fee_per_gas,
            fees.max_fee_per_gas,
            gas_limit,
            to_bytes,
            value,
            data,
            [],  # access list
        ]
        return EIP1559_TX_TYPE + rlp.encode(fields)

    # EIP-155: chain id, 0, 0 stand in for v, r, s
    return rlp.encode([nonce, fees.gas_price, gas_limit, to_bytes, value, data, profile.chain_id, 0, 0])


def find_function(abi: list[dict], method: str, arg_count: int) -> dict:
    """Locate a function ABI entry by name (and arity, for overloads).

    Accepts "transfer" or a full signature such as "transfer(address,uint256)".

    Raises:
        MethodNotFound: if no function of that name exists
        InvalidParameters: if none of the overloads takes arg_count arguments
    """
    name, _, signature = method.partition("(")
    candidates = [
        entry for entry in abi
        if entry.get("type", "function") == "function" and entry.get("name") == name
    ]
    if signature:
        wanted = signature.rstrip(")").replace(" ", "")
        candidates = [
            entry for entry in candidates
            if ",".join(collapse_if_tuple(i) for i in entry.get("inputs", [])) == wanted
        ]
    if not candidates:
        available = sorted({e.get("name") for e in abi if e.get("type", "function") == "function"})
        raise MethodNotFound(
            f"Method {method} not found in ABI",
            component="EvmTransactionAssembler",
            available=", ".join(n for n in available if n),
        )

    for entry in candidates:
        if len(entry.get("inputs", [])) == arg_count:
            return entry

    raise InvalidParameters(
        f"Method {method} takes {len(candidates[0].get('inputs', []))} arguments, got {arg_count}",
        component="EvmTransactionAssembler",
    )


def encode_call(fn_abi: dict, args: tuple) -> bytes:
    """Selector plus ABI-encoded arguments."""
    types = [collapse_if_tuple(i) for i in fn_abi.get("inputs", [])]
    try:
        encoded = abi_encode(types, list(args))
    except (EncodingError, TypeError, ValueError, OverflowError) as e:
        raise InvalidParameters(
            f"Cannot encode arguments for {fn_abi.get('name')}({','.join(types)}): {e}",
            component="EvmTransactionAssembler",
        ) from e
    return function_abi_to_4byte_selector(fn_abi) + encoded


class EvmTransactionAssembler(TransactionAssembler):
    """Assembler for account-model EVM networks."""

    family = ChainFamily.EVM

    async def prepare(self, intent: UnsignedIntent) -> PreparedTransaction:
        profile = self.profile_for(intent)
        sender = validate_evm_address(self.require_sender(intent), "sender", profile.name)

        to, value, data, default_gas, token_check = await self._build_call(intent, profile, sender)

        nonce, quote, balance = await asyncio.gather(
            self.resolver.resolve_nonce(sender, profile, intent.nonce),
            self.resolver.resolve_fee(profile, intent.fees),
            self.chain_state.get_balance(sender, profile.name),
        )

        gas_limit, gas_estimated = await self.resolver.resolve_gas_limit(
            profile,
            {"from": sender, "to": to, "value": hex(value), "data": "0x" + data.hex()},
            override=intent.gas_limit,
            default=default_gas,
        )

        if token_check is not None:
            await self._check_token_balance(profile, sender, *token_check)
        self._check_balance(profile, sender, balance, value, gas_limit, quote.fees)

        message = encode_unsigned(profile, nonce, quote.fees, gas_limit, to, value, data)
        if len(message) > profile.max_message_bytes:
            raise MessageTooLarge(
                f"Transaction payload is {len(message)} bytes, limit {profile.max_message_bytes}",
                size=len(message),
                limit=profile.max_message_bytes,
                component="EvmTransactionAssembler",
                network=profile.name,
            )

        fee_kind = "eip1559" if profile.fee_model == FeeModel.EIP1559 else "legacy"
        logger.info(
            f"Prepared {intent.__class__.__name__} on {profile.name}: "
            f"{sender} -> {to}, nonce={nonce}, gas={gas_limit}, fees={fee_kind}"
            f"{' (estimated)' if quote.estimated else ''}"
        )

        return PreparedTransaction(
            network=profile.name,
            family=ChainFamily.EVM,
            sender=sender,
            to=to,
            value=value,
            payload=data,
            fees=quote.fees,
            message_bytes=message,
            nonce=nonce,
            gas_limit=gas_limit,
            chain_id=profile.chain_id,
            fee_estimated=quote.estimated,
            gas_estimated=gas_estimated,
            nonce_overridden=intent.nonce is not None,
            metadata={"intent": intent.__class__.__name__},
        )

    async def _build_call(
        self,
        intent: UnsignedIntent,
        profile: ChainProfile,
        sender: str,
    ) -> tuple[str, int, bytes, int, Optional[tuple[str, int]]]:
        """Resolve (to, value, data, default gas, token balance check) for intent."""
        network = profile.name

        if isinstance(intent, NativeTransfer):
            to = validate_evm_address(intent.to, "recipient", network)
            value = to_base_units(intent.amount, profile.native_decimals)
            return to, value, b"", DEFAULT_GAS_LIMITS["native"], None

        if isinstance(intent, FungibleTokenTransfer):
            token = validate_evm_address(intent.token, "token", network)
            to = validate_evm_address(intent.to, "recipient", network)
            decimals = await self._token_decimals(token, intent.decimals, network)
            amount = to_base_units(intent.amount, decimals)
            data = ERC20_TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [to, amount])
            return token, 0, data, DEFAULT_GAS_LIMITS["erc20_transfer"], (token, amount)

        if isinstance(intent, FungibleTokenApprove):
            token = validate_evm_address(intent.token, "token", network)
            spender = validate_evm_address(intent.spender, "spender", network)
            decimals = await self._token_decimals(token, intent.decimals, network)
            # Zero approval revokes an allowance
            amount = to_base_units(intent.amount, decimals, allow_zero=True)
            data = ERC20_APPROVE_SELECTOR + abi_encode(["address", "uint256"], [spender, amount])
            return token, 0, data, DEFAULT_GAS_LIMITS["erc20_approve"], None

        if isinstance(intent, ContractCall):
            contract = validate_evm_address(intent.contract, "contract", network)
            abi = intent.abi
            if abi is None:
                abi = await self.chain_state.get_abi(contract, network)
            fn_abi = find_function(abi, intent.method, len(intent.args))
            data = encode_call(fn_abi, intent.args)
            value = to_base_units(intent.value, profile.native_decimals, allow_zero=True)
            if value and not fn_abi.get("payable") and fn_abi.get("stateMutability") != "payable":
                raise InvalidParameters(
                    f"Method {intent.method} is not payable but value {intent.value} was given",
                    component="EvmTransactionAssembler",
                    network=network,
                )
            return contract, value, data, DEFAULT_GAS_LIMITS["contract_call"], None

        raise InvalidParameters(
            f"Unsupported intent: {intent.__class__.__name__}",
            component="EvmTransactionAssembler",
            network=network,
        )

    async def _token_decimals(self, token: str, override: Optional[int], network: str) -> int:
        if override is not None:
            return override
        try:
            metadata = await self.chain_state.get_token_metadata(token, network)
        except NotImplementedError as e:
            raise InvalidParameters(
                f"Token decimals unknown for {token}",
                hint="Pass decimals explicitly",
                component="EvmTransactionAssembler",
                network=network,
            ) from e
        return metadata.decimals

    async def _check_token_balance(self, profile: ChainProfile, sender: str, token: str, amount: int) -> None:
        try:
            balance = await self.chain_state.get_token_balance(sender, token, profile.name)
        except NotImplementedError:
            logger.debug(f"Token balance lookup not supported; skipping check for {token}")
            return
        if balance < amount:
            raise InsufficientBalance(
                f"Token balance {balance} below transfer amount {amount}",
                shortfall="token",
                required=amount,
                available=balance,
                component="EvmTransactionAssembler",
                network=profile.name,
                address=sender,
            )

    @staticmethod
    def _check_balance(
        profile: ChainProfile,
        sender: str,
        balance: int,
        value: int,
        gas_limit: int,
        fees: FeeFields,
    ) -> None:
        """Require balance >= value + gas_limit * fee ceiling."""
        max_fee_cost = gas_limit * fees.ceiling
        required = value + max_fee_cost

        if value > balance:
            raise InsufficientBalance(
                f"Balance {balance} cannot cover transfer amount {value}",
                shortfall="amount",
                required=required,
                available=balance,
                component="EvmTransactionAssembler",
                network=profile.name,
                address=sender,
            )
        if required > balance:
            raise InsufficientBalance(
                f"Balance {balance} covers amount {value} but not gas (up to {max_fee_cost})",
                shortfall="fee",
                required=required,
                available=balance,
                component="EvmTransactionAssembler",
                network=profile.name,
                address=sender,
            )
