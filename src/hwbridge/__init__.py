"""Hardware wallet signing bridge for EVM and Solana."""

__version__ = "0.1.0"
