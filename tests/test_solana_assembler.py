"""Tests for Solana transaction assembly."""

import struct
from decimal import Decimal

import pytest
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from hwbridge.assembly.solana import SolanaTransactionAssembler, parse_pubkey
from hwbridge.chains import ChainFamily
from hwbridge.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidParameters,
    MessageTooLarge,
    RecipientTokenAccountMissing,
    SourceTokenAccountMissing,
)
from hwbridge.models import ContractCall, FungibleTokenApprove, FungibleTokenTransfer, NativeTransfer
from hwbridge.ports import FeeEstimate, TokenAccount

from conftest import EVM_TOKEN, SOL

NETWORK = "solana-devnet"


class Clock:
    def __init__(self, now: float = 500.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def wallet() -> str:
    return str(Keypair().pubkey())


def program_ids(message_bytes: bytes) -> list[Pubkey]:
    message = Message.from_bytes(message_bytes)
    return [message.account_keys[ix.program_id_index] for ix in message.instructions]


def instruction_data(message_bytes: bytes, index: int) -> bytes:
    return bytes(Message.from_bytes(message_bytes).instructions[index].data)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def assembler(chain_state, clock) -> SolanaTransactionAssembler:
    return SolanaTransactionAssembler(chain_state, clock=clock)


@pytest.fixture
def mint() -> str:
    return wallet()


def give_token_account(chain_state, owner: str, mint: str, amount: int = 10**9) -> None:
    ata = get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint))
    chain_state.token_accounts[(owner, mint)] = TokenAccount(address=str(ata), exists=True, amount=amount)


class TestNativeTransfer:
    """Tests for SOL transfers."""

    @pytest.mark.asyncio
    async def test_transfer(self, chain_state, assembler, clock, solana_sender):
        """Test a plain transfer has one system instruction and the fee payer first."""
        recipient = wallet()

        prepared = await assembler.prepare(
            NativeTransfer(network=NETWORK, sender=solana_sender, to=recipient, amount=Decimal("0.25"))
        )

        assert prepared.family == ChainFamily.SOLANA
        assert prepared.value == SOL // 4
        assert prepared.nonce is None
        assert prepared.blockhash == chain_state.blockhash
        assert prepared.instructions == ("transfer",)
        assert prepared.valid_until == clock.now + 60
        assert prepared.signer_index == 0

        message = Message.from_bytes(prepared.message_bytes)
        assert str(message.account_keys[0]) == solana_sender
        assert message.header.num_required_signatures == 1
        assert str(message.recent_blockhash) == chain_state.blockhash
        assert program_ids(prepared.message_bytes) == [SYSTEM_PROGRAM_ID]
        data = instruction_data(prepared.message_bytes, 0)
        assert struct.unpack("<IQ", data) == (2, SOL // 4)

    @pytest.mark.asyncio
    async def test_fees_from_chain(self, assembler, solana_sender):
        prepared = await assembler.prepare(
            NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("1"))
        )

        assert prepared.fees.base_fee_lamports == 5000
        assert prepared.fees.priority_fee_micro_lamports is None
        assert prepared.compute_unit_limit == 200_000

    @pytest.mark.asyncio
    async def test_off_curve_sender_rejected(self, assembler, mint):
        pda, _ = Pubkey.find_program_address([b"vault"], TOKEN_PROGRAM_ID)

        with pytest.raises(InvalidAddress):
            await assembler.prepare(
                NativeTransfer(network=NETWORK, sender=str(pda), to=wallet(), amount=Decimal("1"))
            )

    @pytest.mark.asyncio
    async def test_invalid_recipient(self, assembler, solana_sender):
        with pytest.raises(InvalidAddress):
            await assembler.prepare(
                NativeTransfer(network=NETWORK, sender=solana_sender, to="not-base58!", amount=Decimal("1"))
            )

    @pytest.mark.asyncio
    async def test_nonce_override_rejected(self, assembler, solana_sender):
        with pytest.raises(InvalidParameters):
            await assembler.prepare(
                NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("1"), nonce=3)
            )

    @pytest.mark.asyncio
    async def test_contract_call_unsupported(self, assembler, solana_sender):
        with pytest.raises(InvalidParameters):
            await assembler.prepare(
                ContractCall(network=NETWORK, sender=solana_sender, contract=EVM_TOKEN, method="store")
            )

    @pytest.mark.asyncio
    async def test_amount_shortfall(self, chain_state, assembler, solana_sender):
        chain_state.balances[solana_sender] = SOL

        with pytest.raises(InsufficientBalance) as exc:
            await assembler.prepare(
                NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("2"))
            )
        assert exc.value.shortfall == "amount"

    @pytest.mark.asyncio
    async def test_rent_reserve(self, chain_state, assembler, solana_sender):
        """Test a transfer may not leave a balance below the rent-exempt minimum."""
        chain_state.balances[solana_sender] = SOL

        ok = await assembler.prepare(
            NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.999"))
        )
        assert ok.value == 999_000_000

        with pytest.raises(InsufficientBalance) as exc:
            await assembler.prepare(
                NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.9995"))
            )
        assert exc.value.shortfall == "fee"

    @pytest.mark.asyncio
    async def test_full_balance_sweep_allowed(self, chain_state, assembler, solana_sender):
        chain_state.balances[solana_sender] = SOL + 5000

        prepared = await assembler.prepare(
            NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("1"))
        )
        assert prepared.value == SOL


class TestTokenTransfer:
    """Tests for SPL token transfers."""

    @pytest.mark.asyncio
    async def test_recipient_account_missing(self, chain_state, assembler, solana_sender, mint):
        give_token_account(chain_state, solana_sender, mint)

        with pytest.raises(RecipientTokenAccountMissing) as exc:
            await assembler.prepare(
                FungibleTokenTransfer(
                    network=NETWORK, sender=solana_sender, token=mint, to=wallet(), amount=Decimal("1"), decimals=6
                )
            )
        assert "create_recipient_account" in exc.value.hint

    @pytest.mark.asyncio
    async def test_create_recipient_account(self, chain_state, assembler, solana_sender, mint):
        """Test the ATA creation instruction precedes transfer_checked."""
        give_token_account(chain_state, solana_sender, mint)
        recipient = wallet()

        prepared = await assembler.prepare(
            FungibleTokenTransfer(
                network=NETWORK,
                sender=solana_sender,
                token=mint,
                to=recipient,
                amount=Decimal("1.5"),
                decimals=6,
                create_recipient_account=True,
            )
        )

        assert prepared.instructions == ("create_associated_token_account", "transfer_checked")
        assert program_ids(prepared.message_bytes) == [ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID]
        data = instruction_data(prepared.message_bytes, 1)
        assert data[0] == 12  # TransferChecked
        assert struct.unpack("<Q", data[1:9])[0] == 1_500_000
        assert data[9] == 6
        assert prepared.to == recipient

    @pytest.mark.asyncio
    async def test_create_account_rent_counted(self, chain_state, assembler, solana_sender, mint):
        give_token_account(chain_state, solana_sender, mint)
        chain_state.balances[solana_sender] = 2_000_000

        with pytest.raises(InsufficientBalance) as exc:
            await assembler.prepare(
                FungibleTokenTransfer(
                    network=NETWORK,
                    sender=solana_sender,
                    token=mint,
                    to=wallet(),
                    amount=Decimal("1"),
                    decimals=6,
                    create_recipient_account=True,
                )
            )
        assert exc.value.shortfall == "fee"
        assert exc.value.required == 2_039_280 + 5000

    @pytest.mark.asyncio
    async def test_existing_recipient_account(self, chain_state, assembler, solana_sender, mint):
        recipient = wallet()
        give_token_account(chain_state, solana_sender, mint)
        give_token_account(chain_state, recipient, mint, amount=0)
        chain_state.token_decimals[mint] = 9

        prepared = await assembler.prepare(
            FungibleTokenTransfer(network=NETWORK, sender=solana_sender, token=mint, to=recipient, amount=Decimal("1"))
        )

        assert prepared.instructions == ("transfer_checked",)
        assert instruction_data(prepared.message_bytes, 0)[9] == 9

    @pytest.mark.asyncio
    async def test_source_account_missing(self, assembler, solana_sender, mint):
        with pytest.raises(SourceTokenAccountMissing):
            await assembler.prepare(
                FungibleTokenTransfer(
                    network=NETWORK, sender=solana_sender, token=mint, to=wallet(), amount=Decimal("1"), decimals=6
                )
            )

    @pytest.mark.asyncio
    async def test_token_shortfall(self, chain_state, assembler, solana_sender, mint):
        give_token_account(chain_state, solana_sender, mint, amount=100)

        with pytest.raises(InsufficientBalance) as exc:
            await assembler.prepare(
                FungibleTokenTransfer(
                    network=NETWORK, sender=solana_sender, token=mint, to=wallet(), amount=Decimal("1"), decimals=6
                )
            )
        assert exc.value.shortfall == "token"

    @pytest.mark.asyncio
    async def test_off_curve_recipient_rejected(self, chain_state, assembler, solana_sender, mint):
        give_token_account(chain_state, solana_sender, mint)
        ata = get_associated_token_address(Pubkey.from_string(solana_sender), Pubkey.from_string(mint))

        with pytest.raises(InvalidAddress):
            await assembler.prepare(
                FungibleTokenTransfer(
                    network=NETWORK, sender=solana_sender, token=mint, to=str(ata), amount=Decimal("1"), decimals=6
                )
            )

    @pytest.mark.asyncio
    async def test_approve(self, chain_state, assembler, solana_sender, mint):
        give_token_account(chain_state, solana_sender, mint)
        delegate = wallet()

        prepared = await assembler.prepare(
            FungibleTokenApprove(
                network=NETWORK, sender=solana_sender, token=mint, spender=delegate, amount=Decimal("5"), decimals=6
            )
        )

        assert prepared.instructions == ("approve_checked",)
        assert prepared.to == delegate
        data = instruction_data(prepared.message_bytes, 0)
        assert data[0] == 13  # ApproveChecked
        assert struct.unpack("<Q", data[1:9])[0] == 5_000_000


class TestBudgetAndSize:
    """Tests for compute budget instructions, memos and the size limit."""

    @pytest.mark.asyncio
    async def test_priority_fee_adds_budget_instructions(self, chain_state, assembler, solana_sender):
        """Test a priority fee emits limit and price instructions ahead of the transfer."""
        chain_state.compute_units = 10_000

        prepared = await assembler.prepare(
            NativeTransfer(
                network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.1"), priority_fee=1000
            )
        )

        assert prepared.instructions == ("compute_unit_limit", "compute_unit_price", "transfer")
        assert prepared.compute_unit_limit == 12_000
        assert not prepared.gas_estimated
        assert prepared.fees.priority_fee_micro_lamports == 1000
        assert prepared.fees.total_lamports(12_000) == 5000 + 12

    @pytest.mark.asyncio
    async def test_priority_fee_from_chain(self, chain_state, assembler, solana_sender):
        chain_state.fee = FeeEstimate(lamports_per_signature=5000, priority_fee_micro_lamports=2000)

        prepared = await assembler.prepare(
            NativeTransfer(network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.1"))
        )

        assert prepared.fees.priority_fee_micro_lamports == 2000
        assert prepared.compute_unit_limit == 200_000
        assert prepared.gas_estimated
        assert prepared.instructions[:2] == ("compute_unit_limit", "compute_unit_price")

    @pytest.mark.asyncio
    async def test_compute_unit_override(self, assembler, solana_sender):
        prepared = await assembler.prepare(
            NativeTransfer(
                network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.1"), compute_units=30_000
            )
        )

        assert prepared.instructions == ("compute_unit_limit", "transfer")
        assert prepared.compute_unit_limit == 30_000

    @pytest.mark.asyncio
    async def test_memo(self, assembler, solana_sender):
        prepared = await assembler.prepare(
            NativeTransfer(
                network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.1"), memo="invoice 42"
            )
        )

        assert prepared.instructions == ("transfer", "memo")
        assert instruction_data(prepared.message_bytes, 1) == b"invoice 42"

    @pytest.mark.asyncio
    async def test_message_too_large(self, assembler, solana_sender):
        """Test an oversized memo is rejected with the size and the limit."""
        with pytest.raises(MessageTooLarge) as exc:
            await assembler.prepare(
                NativeTransfer(
                    network=NETWORK, sender=solana_sender, to=wallet(), amount=Decimal("0.1"), memo="x" * 1300
                )
            )

        assert exc.value.limit == 1232
        assert exc.value.size > 1232
        assert "reduce instruction count" in exc.value.hint

    def test_parse_pubkey(self):
        key = wallet()
        assert str(parse_pubkey(key, "recipient")) == key
        with pytest.raises(InvalidAddress):
            parse_pubkey("0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed", "recipient")
