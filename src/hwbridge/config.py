"""Application configuration using pydantic-settings.

Device session tuning, fee/gas policy and per-network RPC endpoints.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Device
    # ======================
    device_backend: str = Field(
        default="simulated", description="Device transport backend: simulated or external"
    )
    device_seed_phrase: Optional[str] = Field(
        default=None, description="BIP-39 mnemonic for the simulated device"
    )
    device_connect_timeout: float = Field(
        default=5.0, description="Seconds allowed for a single transport open"
    )
    device_max_connect_attempts: int = Field(
        default=3, description="Transport open attempts before DeviceUnavailable"
    )
    device_connect_backoff: float = Field(
        default=0.5, description="Seconds between transport open attempts"
    )
    device_op_timeout: float = Field(
        default=120.0, description="Seconds a device operation may run (includes user confirmation)"
    )

    # ======================
    # Derivation
    # ======================
    default_evm_path: str = Field(default="44'/60'/0'/0/0", description="Default EVM derivation path")
    default_solana_path: str = Field(default="44'/501'/0'/0'", description="Default Solana derivation path")

    # ======================
    # Fee / Gas Policy
    # ======================
    gas_safety_margin: float = Field(
        default=0.2, description="Margin added on top of gas and compute estimates (20%)"
    )
    max_gas_limit: int = Field(default=10_000_000, description="Maximum EVM gas limit accepted")
    fee_cache_ttl: float = Field(default=10.0, description="Seconds a fee quote stays cached (0 = off)")
    solana_default_compute_units: int = Field(
        default=200_000, description="Compute unit limit assumed when no estimate is available"
    )
    solana_default_priority_fee: int = Field(
        default=0, description="Default priority fee in micro-lamports per compute unit"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    eth_rpc_url: str = Field(default="https://eth.llamarpc.com", description="Ethereum RPC URL")
    sepolia_rpc_url: str = Field(
        default="https://ethereum-sepolia-rpc.publicnode.com", description="Sepolia RPC URL"
    )
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", description="Polygon RPC URL")
    arbitrum_rpc_url: str = Field(default="https://arb1.arbitrum.io/rpc", description="Arbitrum RPC URL")
    optimism_rpc_url: str = Field(default="https://mainnet.optimism.io", description="Optimism RPC URL")
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC URL")
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org", description="BSC RPC URL")
    sol_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana mainnet RPC URL"
    )
    sol_devnet_rpc_url: str = Field(default="https://api.devnet.solana.com", description="Solana devnet RPC URL")
    sol_testnet_rpc_url: str = Field(
        default="https://api.testnet.solana.com", description="Solana testnet RPC URL"
    )
    rpc_timeout: float = Field(default=30.0, description="HTTP timeout for RPC calls")

    # ======================
    # ABI Lookup (Blockscout)
    # ======================
    blockscout_api_key: str = Field(default="", description="Blockscout API key")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_seed(self) -> bool:
        """Check if a simulated-device seed phrase is configured."""
        return bool(self.device_seed_phrase and len(self.device_seed_phrase.split()) >= 12)

    def get_rpc_url(self, network: str) -> str:
        """Get RPC URL for a network name."""
        rpc_map = {
            "mainnet": self.eth_rpc_url,
            "sepolia": self.sepolia_rpc_url,
            "polygon": self.polygon_rpc_url,
            "arbitrum": self.arbitrum_rpc_url,
            "optimism": self.optimism_rpc_url,
            "base": self.base_rpc_url,
            "bsc": self.bsc_rpc_url,
            "solana-mainnet": self.sol_rpc_url,
            "solana-devnet": self.sol_devnet_rpc_url,
            "solana-testnet": self.sol_testnet_rpc_url,
        }
        return rpc_map.get(network.lower(), "")

    def get_blockscout_url(self, network: str) -> str:
        """Get the Blockscout API base for an EVM network."""
        url_map = {
            "mainnet": "https://eth.blockscout.com/api",
            "sepolia": "https://eth-sepolia.blockscout.com/api",
            "polygon": "https://polygon.blockscout.com/api",
            "arbitrum": "https://arbitrum.blockscout.com/api",
            "optimism": "https://optimism.blockscout.com/api",
            "base": "https://base.blockscout.com/api",
        }
        return url_map.get(network.lower(), "")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "device": {
                "backend": self.device_backend,
                "seed_configured": self.has_seed,
                "connect_timeout": self.device_connect_timeout,
                "max_connect_attempts": self.device_max_connect_attempts,
                "op_timeout": self.device_op_timeout,
            },
            "fees": {
                "gas_safety_margin": self.gas_safety_margin,
                "max_gas_limit": self.max_gas_limit,
                "fee_cache_ttl": self.fee_cache_ttl,
                "solana_default_compute_units": self.solana_default_compute_units,
            },
            "rpc": {
                "mainnet": self._redact_url(self.eth_rpc_url),
                "sepolia": self._redact_url(self.sepolia_rpc_url),
                "polygon": self._redact_url(self.polygon_rpc_url),
                "arbitrum": self._redact_url(self.arbitrum_rpc_url),
                "optimism": self._redact_url(self.optimism_rpc_url),
                "base": self._redact_url(self.base_rpc_url),
                "bsc": self._redact_url(self.bsc_rpc_url),
                "solana-mainnet": self._redact_url(self.sol_rpc_url),
                "solana-devnet": self._redact_url(self.sol_devnet_rpc_url),
                "solana-testnet": self._redact_url(self.sol_testnet_rpc_url),
            },
            "blockscout_api_key": "***" if self.blockscout_api_key else "(not set)",
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials and API keys embedded in an RPC URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        if "api-key=" in url or "apikey=" in url:
            if "?" in url:
                base, _ = url.split("?", 1)
                return f"{base}?***"
            marker = "api-key=" if "api-key=" in url else "apikey="
            base, _ = url.split(marker, 1)
            return f"{base}{marker}***"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
