"""Transaction assembly.

- NonceFeeResolver: nonce, fee and gas/compute fields from chain state
- EvmTransactionAssembler: EIP-1559 / legacy EVM transactions
- SolanaTransactionAssembler: Solana messages with SPL token support
"""

from hwbridge.assembly.base import TransactionAssembler
from hwbridge.assembly.evm import EvmTransactionAssembler
from hwbridge.assembly.resolver import NonceFeeResolver, select_nonce
from hwbridge.assembly.solana import SolanaTransactionAssembler

__all__ = [
    "EvmTransactionAssembler",
    "NonceFeeResolver",
    "SolanaTransactionAssembler",
    "TransactionAssembler",
    "select_nonce",
]
