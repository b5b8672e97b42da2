"""Static per-network parameters for supported chains.

EVM networks (EIP-1559 unless noted):
- mainnet, sepolia, polygon, arbitrum, optimism, base
- bsc (legacy gas price)

Solana clusters:
- solana-mainnet, solana-devnet, solana-testnet

Fallback fees are used when the chain-state port cannot quote live fees;
transactions built from them are flagged as estimated.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from hwbridge.errors import UnsupportedNetwork

GWEI = 10**9

# Solana packet data limit (1280 IPv6 MTU - 48 header bytes)
SOLANA_MAX_MESSAGE_BYTES = 1232
EVM_MAX_MESSAGE_BYTES = 128 * 1024


class ChainFamily(str, Enum):
    """Chain family, which selects the assembler and signature scheme."""
    EVM = "evm"
    SOLANA = "solana"


class FeeModel(str, Enum):
    """How a network prices transactions."""
    LEGACY = "legacy"
    EIP1559 = "eip1559"
    SOLANA_PRIORITY_FEE = "solana_priority_fee"


@dataclass(frozen=True)
class ChainProfile:
    """Immutable static record for one network."""

    # Required fields (no defaults) - must come first
    name: str
    family: ChainFamily
    fee_model: FeeModel
    native_symbol: str
    native_decimals: int
    coin_type: int  # BIP44 coin type (SLIP-44)
    max_message_bytes: int

    # Optional fields (with defaults)
    chain_id: Optional[int] = None  # EVM chains only
    cluster: Optional[str] = None  # Solana only
    fallback_max_fee_per_gas: int = 50 * GWEI
    fallback_priority_fee_per_gas: int = 2 * GWEI
    fallback_gas_price: int = 20 * GWEI
    lamports_per_signature: int = 5000
    validity_window_seconds: float = 60.0  # Solana blockhash lifetime (~150 slots)

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM

    @property
    def is_solana(self) -> bool:
        return self.family == ChainFamily.SOLANA


def _evm(name: str, chain_id: int, symbol: str = "ETH", **kwargs) -> ChainProfile:
    kwargs.setdefault("fee_model", FeeModel.EIP1559)
    return ChainProfile(
        name=name,
        family=ChainFamily.EVM,
        native_symbol=symbol,
        native_decimals=18,
        coin_type=60,
        max_message_bytes=EVM_MAX_MESSAGE_BYTES,
        chain_id=chain_id,
        **kwargs,
    )


def _solana(name: str, cluster: str) -> ChainProfile:
    return ChainProfile(
        name=name,
        family=ChainFamily.SOLANA,
        fee_model=FeeModel.SOLANA_PRIORITY_FEE,
        native_symbol="SOL",
        native_decimals=9,
        coin_type=501,
        max_message_bytes=SOLANA_MAX_MESSAGE_BYTES,
        cluster=cluster,
    )


# ======================
# Network Profiles
# ======================

CHAIN_PROFILES: dict[str, ChainProfile] = {
    "mainnet": _evm("mainnet", 1),
    "sepolia": _evm("sepolia", 11155111),
    "polygon": _evm(
        "polygon",
        137,
        symbol="POL",
        fallback_max_fee_per_gas=200 * GWEI,
        fallback_priority_fee_per_gas=30 * GWEI,
    ),
    "arbitrum": _evm(
        "arbitrum",
        42161,
        fallback_max_fee_per_gas=GWEI,
        fallback_priority_fee_per_gas=0,
    ),
    "optimism": _evm(
        "optimism",
        10,
        fallback_max_fee_per_gas=GWEI,
        fallback_priority_fee_per_gas=GWEI // 1000,
    ),
    "base": _evm(
        "base",
        8453,
        fallback_max_fee_per_gas=GWEI,
        fallback_priority_fee_per_gas=GWEI // 1000,
    ),
    "bsc": _evm(
        "bsc",
        56,
        symbol="BNB",
        fee_model=FeeModel.LEGACY,
        fallback_gas_price=3 * GWEI,
    ),
    "solana-mainnet": _solana("solana-mainnet", "mainnet-beta"),
    "solana-devnet": _solana("solana-devnet", "devnet"),
    "solana-testnet": _solana("solana-testnet", "testnet"),
}

# Aliases accepted from callers
NETWORK_ALIASES: dict[str, str] = {
    "ethereum": "mainnet",
    "eth": "mainnet",
    "matic": "polygon",
    "bnb": "bsc",
    "solana": "solana-mainnet",
    "sol": "solana-mainnet",
}


def get_profile(network: str) -> ChainProfile:
    """Get the profile for a network name or alias.

    Raises:
        UnsupportedNetwork: if the network is unknown
    """
    key = network.lower()
    key = NETWORK_ALIASES.get(key, key)
    profile = CHAIN_PROFILES.get(key)
    if profile is None:
        raise UnsupportedNetwork(
            f"Unsupported network: {network}",
            component="chains",
            network=network,
            supported=", ".join(sorted(CHAIN_PROFILES)),
        )
    return profile


def get_supported_networks(family: Optional[ChainFamily] = None) -> list[str]:
    """List supported network names, optionally filtered by family."""
    return [
        name for name, profile in CHAIN_PROFILES.items()
        if family is None or profile.family == family
    ]
