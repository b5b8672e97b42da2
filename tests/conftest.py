"""Pytest configuration and fixtures."""

import os
from typing import Optional

import pytest
from solders.hash import Hash

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["DEVICE_BACKEND"] = "simulated"
os.environ["DEVICE_CONNECT_BACKOFF"] = "0"
os.environ["DEVICE_CONNECT_TIMEOUT"] = "1"
os.environ["DEVICE_OP_TIMEOUT"] = "5"
os.environ["FEE_CACHE_TTL"] = "0"

from hwbridge.config import get_settings
from hwbridge.derivation import parse_path
from hwbridge.device.factory import reset_device_session
from hwbridge.device.session import DeviceSession
from hwbridge.device.simulated import SimulatedDeviceTransport
from hwbridge.errors import ChainStateUnavailable
from hwbridge.models import TxStatus
from hwbridge.ports import (
    BlockhashInfo,
    BroadcastPort,
    ChainStatePort,
    FeeEstimate,
    TokenAccount,
    TokenMetadata,
)

GWEI = 10**9
ETH = 10**18
SOL = 10**9

EVM_PATH = "44'/60'/0'/0/0"
SOLANA_PATH = "44'/501'/0'/0'"

# Address of EVM_PATH for the "abandon ... about" test mnemonic
EVM_TEST_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
EVM_RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
EVM_TOKEN = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


class FakeChainState(ChainStatePort, BroadcastPort):
    """In-memory chain state with realistic mock values.

    Missing optional estimates raise NotImplementedError like a port that
    does not support them.
    """

    def __init__(self):
        self.nonces: dict[str, int] = {}
        self.block_number = 19_000_000
        self.fee = FeeEstimate(
            base_fee_per_gas=10 * GWEI,
            priority_fee_per_gas=1 * GWEI,
            gas_price=12 * GWEI,
            lamports_per_signature=5000,
        )
        self.fail_fees = False
        self.balances: dict[str, int] = {}
        self.default_balance = 10 * ETH
        self.blockhash = str(Hash.new_unique())
        self.token_accounts: dict[tuple[str, str], TokenAccount] = {}
        self.token_decimals: dict[str, int] = {}
        self.token_balances: dict[tuple[str, str], int] = {}
        self.abis: dict[str, list[dict]] = {}
        self.gas_estimate: Optional[int] = None
        self.compute_units: Optional[int] = None
        self.rent = {0: 890_880, 165: 2_039_280}
        self.submitted: list[bytes] = []
        self.calls: list[str] = []

    async def get_block_number(self, network: str) -> int:
        return self.block_number

    async def get_nonce_or_sequence(self, address: str, network: str) -> int:
        self.calls.append("get_nonce_or_sequence")
        return self.nonces.get(address, 0)

    async def get_fee_estimate(self, network: str) -> FeeEstimate:
        self.calls.append("get_fee_estimate")
        if self.fail_fees:
            raise ChainStateUnavailable("fee endpoint down", operation="get_fee_estimate", network=network)
        return self.fee

    async def get_balance(self, address: str, network: str) -> int:
        self.calls.append("get_balance")
        return self.balances.get(address, self.default_balance)

    async def get_latest_blockhash(self, network: str) -> BlockhashInfo:
        self.calls.append("get_latest_blockhash")
        return BlockhashInfo(blockhash=self.blockhash, last_valid_block_height=self.block_number + 150)

    async def get_token_account(self, owner: str, mint: str, network: str) -> TokenAccount:
        self.calls.append("get_token_account")
        return self.token_accounts.get((owner, mint), TokenAccount(address="", exists=False))

    async def get_abi(self, contract: str, network: str) -> list[dict]:
        self.calls.append("get_abi")
        if contract not in self.abis:
            raise ChainStateUnavailable("ABI not found", operation="get_abi", network=network)
        return self.abis[contract]

    async def estimate_gas(self, tx: dict, network: str) -> int:
        if self.gas_estimate is None:
            raise NotImplementedError
        return self.gas_estimate

    async def get_token_metadata(self, token: str, network: str) -> TokenMetadata:
        if token not in self.token_decimals:
            raise NotImplementedError
        return TokenMetadata(decimals=self.token_decimals[token])

    async def get_token_balance(self, owner: str, token: str, network: str) -> int:
        if (owner, token) not in self.token_balances:
            raise NotImplementedError
        return self.token_balances[(owner, token)]

    async def get_rent_exempt_minimum(self, data_size: int, network: str) -> int:
        return self.rent[data_size]

    async def estimate_compute_units(self, message: bytes, network: str) -> int:
        if self.compute_units is None:
            raise NotImplementedError
        return self.compute_units

    async def submit(self, raw: bytes, network: str) -> str:
        self.submitted.append(raw)
        return f"submitted-{len(self.submitted)}"

    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        return TxStatus(tx_id=tx_id, status="confirmed", block=self.block_number)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh settings and device session per test."""
    get_settings.cache_clear()
    reset_device_session()
    yield
    reset_device_session()


@pytest.fixture
def chain_state() -> FakeChainState:
    return FakeChainState()


@pytest.fixture
def transport() -> SimulatedDeviceTransport:
    return SimulatedDeviceTransport()


@pytest.fixture
def session(transport: SimulatedDeviceTransport) -> DeviceSession:
    return DeviceSession(transport, connect_backoff=0, op_timeout=2.0)


@pytest.fixture
def solana_sender(transport: SimulatedDeviceTransport) -> str:
    return transport.derive_address(parse_path(SOLANA_PATH)).address
