"""Solana transaction assembler.

Instruction layout (in order, each only when needed):
1. ComputeBudget set_compute_unit_limit (override, or estimate when a priority fee is set)
2. ComputeBudget set_compute_unit_price (priority fee)
3. Associated token account creation for the recipient
4. The transfer / approve instruction
5. SPL memo

The fee payer is always the sender and the only signer. The serialized
transaction must fit the 1232-byte device and packet limit; larger messages
fail with MessageTooLarge before anything reaches the device.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.memo.constants import MEMO_PROGRAM_ID
from spl.memo.instructions import create_memo
from spl.memo.models import MemoParams
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    approve_checked,
    create_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)
from spl.token.models import ApproveCheckedParams, TransferCheckedParams

from hwbridge.assembly.base import TransactionAssembler
from hwbridge.assembly.resolver import NonceFeeResolver
from hwbridge.chains import ChainFamily, ChainProfile
from hwbridge.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidParameters,
    MessageTooLarge,
    RecipientTokenAccountMissing,
    SourceTokenAccountMissing,
)
from hwbridge.models import (
    FungibleTokenApprove,
    FungibleTokenTransfer,
    NativeTransfer,
    PreparedTransaction,
    SolanaFees,
    UnsignedIntent,
    to_base_units,
)
from hwbridge.ports import ChainStatePort

logger = logging.getLogger(__name__)

TOKEN_ACCOUNT_SIZE = 165
# Rent-exempt minimum for a 165-byte token account at current rent rates
DEFAULT_TOKEN_ACCOUNT_RENT = 2_039_280


def parse_pubkey(
    value: str,
    field: str,
    network: Optional[str] = None,
    require_on_curve: bool = False,
) -> Pubkey:
    """Parse a base58 public key.

    Args:
        require_on_curve: reject program-derived addresses (no private key),
            used for wallet owners that must sign or hold token accounts

    Raises:
        InvalidAddress: if malformed or off-curve when required
    """
    try:
        pubkey = Pubkey.from_string(value)
    except (ValueError, TypeError) as e:
        raise InvalidAddress(
            f"Invalid {field}: {value}",
            component="SolanaTransactionAssembler",
            network=network,
            address=str(value),
        ) from e

    if require_on_curve and not pubkey.is_on_curve():
        raise InvalidAddress(
            f"{field} {value} is not a wallet address (off-curve)",
            hint="Use the owner's wallet address, not a token account or PDA",
            component="SolanaTransactionAssembler",
            network=network,
            address=value,
        )
    return pubkey


class SolanaTransactionAssembler(TransactionAssembler):
    """Assembler for Solana clusters."""

    family = ChainFamily.SOLANA

    def __init__(
        self,
        chain_state: ChainStatePort,
        resolver: Optional[NonceFeeResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(chain_state, resolver)
        self._clock = clock

    async def prepare(self, intent: UnsignedIntent) -> PreparedTransaction:
        profile = self.profile_for(intent)
        network = profile.name
        sender = parse_pubkey(self.require_sender(intent), "sender", network, require_on_curve=True)

        # Solana has no account nonce; this rejects a nonce override.
        await self.resolver.resolve_nonce(str(sender), profile, intent.nonce)

        instructions, labels, recipient, value, extra_rent = await self._build_instructions(
            intent, profile, sender
        )

        if intent.memo:
            memo = intent.memo.encode("utf-8")
            instructions.append(create_memo(MemoParams(program_id=MEMO_PROGRAM_ID, signer=sender, message=memo)))
            labels.append("memo")

        quote, blockhash_info, balance = await asyncio.gather(
            self.resolver.resolve_fee(profile, intent.fees),
            self.chain_state.get_latest_blockhash(network),
            self.chain_state.get_balance(str(sender), network),
        )
        blockhash = Hash.from_string(blockhash_info.blockhash)

        priority_fee = intent.priority_fee
        if priority_fee is None:
            priority_fee = quote.fees.priority_fee_micro_lamports
        if priority_fee is not None and priority_fee < 0:
            raise InvalidParameters(
                f"Priority fee must be >= 0, got {priority_fee}",
                component="SolanaTransactionAssembler",
                network=network,
            )

        compute_units, units_estimated, set_limit = await self._compute_units(
            profile, intent.compute_units, priority_fee, instructions, sender, blockhash
        )

        budget: list[Instruction] = []
        if set_limit:
            budget.append(set_compute_unit_limit(compute_units))
            labels.insert(0, "compute_unit_limit")
        if priority_fee:
            budget.append(set_compute_unit_price(priority_fee))
            labels.insert(1 if set_limit else 0, "compute_unit_price")

        message = Message.new_with_blockhash(budget + instructions, sender, blockhash)
        if message.header.num_required_signatures != 1:
            raise InvalidParameters(
                "Only fee-payer-signed transactions are supported",
                component="SolanaTransactionAssembler",
                network=network,
                signers=message.header.num_required_signatures,
            )

        wire_size = len(bytes(Transaction.new_unsigned(message)))
        if wire_size > profile.max_message_bytes:
            logger.warning(f"Rejecting {wire_size}-byte Solana transaction on {network}")
            raise MessageTooLarge(
                f"Transaction is {wire_size} bytes, device signing limit is {profile.max_message_bytes}",
                size=wire_size,
                limit=profile.max_message_bytes,
                component="SolanaTransactionAssembler",
                network=network,
            )

        fees = SolanaFees(
            base_fee_lamports=quote.fees.base_fee_lamports * message.header.num_required_signatures,
            priority_fee_micro_lamports=priority_fee or None,
        )
        await self._check_balance(profile, str(sender), balance, value, fees.total_lamports(compute_units), extra_rent)

        message_bytes = bytes(message)
        logger.info(
            f"Prepared {intent.__class__.__name__} on {network}: {sender} -> {recipient}, "
            f"{len(labels)} instructions, {wire_size} bytes, cu={compute_units}"
            f"{' (fee estimated)' if quote.estimated else ''}"
        )

        return PreparedTransaction(
            network=network,
            family=ChainFamily.SOLANA,
            sender=str(sender),
            to=recipient,
            value=value,
            payload=b"",
            fees=fees,
            message_bytes=message_bytes,
            compute_unit_limit=compute_units,
            blockhash=str(blockhash),
            last_valid_block_height=blockhash_info.last_valid_block_height,
            valid_until=self._clock() + profile.validity_window_seconds,
            fee_estimated=quote.estimated,
            gas_estimated=units_estimated,
            signer_index=0,
            instructions=tuple(labels),
            metadata={"intent": intent.__class__.__name__, "wire_size": wire_size},
        )

    async def _build_instructions(
        self,
        intent: UnsignedIntent,
        profile: ChainProfile,
        sender: Pubkey,
    ) -> tuple[list[Instruction], list[str], str, int, int]:
        """Returns (instructions, labels, recipient, lamports moved, extra rent lamports)."""
        network = profile.name

        if isinstance(intent, NativeTransfer):
            to = parse_pubkey(intent.to, "recipient", network)
            lamports = to_base_units(intent.amount, profile.native_decimals)
            ix = transfer(TransferParams(from_pubkey=sender, to_pubkey=to, lamports=lamports))
            return [ix], ["transfer"], str(to), lamports, 0

        if isinstance(intent, FungibleTokenTransfer):
            mint = parse_pubkey(intent.token, "mint", network)
            owner = parse_pubkey(intent.to, "recipient", network, require_on_curve=True)
            decimals = await self._token_decimals(mint, intent.decimals, network)
            amount = to_base_units(intent.amount, decimals)

            source_ata = get_associated_token_address(sender, mint)
            dest_ata = get_associated_token_address(owner, mint)
            source, dest = await asyncio.gather(
                self.chain_state.get_token_account(str(sender), str(mint), network),
                self.chain_state.get_token_account(str(owner), str(mint), network),
            )

            if not source.exists:
                raise SourceTokenAccountMissing(
                    f"Sender has no token account for mint {mint}",
                    component="SolanaTransactionAssembler",
                    network=network,
                    address=str(source_ata),
                )
            if source.amount is not None and source.amount < amount:
                raise InsufficientBalance(
                    f"Token balance {source.amount} below transfer amount {amount}",
                    shortfall="token",
                    required=amount,
                    available=source.amount,
                    component="SolanaTransactionAssembler",
                    network=network,
                    address=str(source_ata),
                )

            instructions: list[Instruction] = []
            labels: list[str] = []
            extra_rent = 0
            if not dest.exists:
                if not intent.create_recipient_account:
                    raise RecipientTokenAccountMissing(
                        f"Recipient {owner} has no token account for mint {mint}",
                        component="SolanaTransactionAssembler",
                        network=network,
                        address=str(dest_ata),
                    )
                instructions.append(create_associated_token_account(payer=sender, owner=owner, mint=mint))
                labels.append("create_associated_token_account")
                extra_rent = await self._token_account_rent(network)

            instructions.append(
                transfer_checked(
                    TransferCheckedParams(
                        program_id=TOKEN_PROGRAM_ID,
                        source=source_ata,
                        mint=mint,
                        dest=dest_ata,
                        owner=sender,
                        amount=amount,
                        decimals=decimals,
                    )
                )
            )
            labels.append("transfer_checked")
            return instructions, labels, str(owner), 0, extra_rent

        if isinstance(intent, FungibleTokenApprove):
            mint = parse_pubkey(intent.token, "mint", network)
            delegate = parse_pubkey(intent.spender, "delegate", network)
            decimals = await self._token_decimals(mint, intent.decimals, network)
            amount = to_base_units(intent.amount, decimals, allow_zero=True)

            source_ata = get_associated_token_address(sender, mint)
            source = await self.chain_state.get_token_account(str(sender), str(mint), network)
            if not source.exists:
                raise SourceTokenAccountMissing(
                    f"Sender has no token account for mint {mint}",
                    component="SolanaTransactionAssembler",
                    network=network,
                    address=str(source_ata),
                )

            ix = approve_checked(
                ApproveCheckedParams(
                    program_id=TOKEN_PROGRAM_ID,
                    source=source_ata,
                    mint=mint,
                    delegate=delegate,
                    owner=sender,
                    amount=amount,
                    decimals=decimals,
                )
            )
            return [ix], ["approve_checked"], str(delegate), 0, 0

        raise InvalidParameters(
            f"{intent.__class__.__name__} is not supported on Solana",
            component="SolanaTransactionAssembler",
            network=network,
        )

    async def _compute_units(
        self,
        profile: ChainProfile,
        override: Optional[int],
        priority_fee: Optional[int],
        instructions: list[Instruction],
        sender: Pubkey,
        blockhash: Hash,
    ) -> tuple[int, bool, bool]:
        """Returns (compute unit limit, fell back to default, emit limit instruction)."""
        if override is not None:
            units, estimated = await self.resolver.resolve_compute_units(profile, override=override)
            return units, estimated, True

        if not priority_fee:
            # Without a priority fee the limit does not affect cost; keep the runtime default.
            units, estimated = await self.resolver.resolve_compute_units(profile)
            return units, estimated, False

        draft = Message.new_with_blockhash(instructions, sender, blockhash)
        units, estimated = await self.resolver.resolve_compute_units(profile, draft_message=bytes(draft))
        return units, estimated, True

    async def _token_decimals(self, mint: Pubkey, override: Optional[int], network: str) -> int:
        if override is not None:
            return override
        try:
            metadata = await self.chain_state.get_token_metadata(str(mint), network)
        except NotImplementedError as e:
            raise InvalidParameters(
                f"Token decimals unknown for mint {mint}",
                hint="Pass decimals explicitly",
                component="SolanaTransactionAssembler",
                network=network,
            ) from e
        return metadata.decimals

    async def _token_account_rent(self, network: str) -> int:
        try:
            return await self.chain_state.get_rent_exempt_minimum(TOKEN_ACCOUNT_SIZE, network)
        except NotImplementedError:
            return DEFAULT_TOKEN_ACCOUNT_RENT

    async def _check_balance(
        self,
        profile: ChainProfile,
        sender: str,
        balance: int,
        value: int,
        fee: int,
        extra_rent: int,
    ) -> None:
        """Balance must cover value + fees + rent for created accounts.

        A native transfer must also leave the sender either empty or above
        the rent-exempt minimum.
        """
        required = value + fee + extra_rent
        if value > balance:
            raise InsufficientBalance(
                f"Balance {balance} lamports cannot cover transfer amount {value}",
                shortfall="amount",
                required=required,
                available=balance,
                component="SolanaTransactionAssembler",
                network=profile.name,
                address=sender,
            )
        if required > balance:
            raise InsufficientBalance(
                f"Balance {balance} lamports covers amount {value} but not fees/rent ({fee + extra_rent})",
                shortfall="fee",
                required=required,
                available=balance,
                component="SolanaTransactionAssembler",
                network=profile.name,
                address=sender,
            )

        remaining = balance - required
        if value and remaining:
            try:
                reserve = await self.chain_state.get_rent_exempt_minimum(0, profile.name)
            except NotImplementedError:
                return
            if remaining < reserve:
                raise InsufficientBalance(
                    f"Transfer would leave {remaining} lamports, below the rent-exempt minimum {reserve}",
                    hint="Send the full balance minus fees, or leave at least the rent-exempt minimum",
                    shortfall="fee",
                    required=required + reserve,
                    available=balance,
                    component="SolanaTransactionAssembler",
                    network=profile.name,
                    address=sender,
                )
