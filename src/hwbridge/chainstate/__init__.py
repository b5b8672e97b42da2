"""JSON-RPC implementations of the chain-state and broadcast ports."""

from hwbridge.chainstate.evm_rpc import EvmRpcChainState
from hwbridge.chainstate.jsonrpc import JsonRpcClient
from hwbridge.chainstate.router import RoutingChainState
from hwbridge.chainstate.solana_rpc import SolanaRpcChainState

__all__ = ["EvmRpcChainState", "JsonRpcClient", "RoutingChainState", "SolanaRpcChainState"]
