"""End-to-end signing pipeline.

Wires the capabilities explicitly:
- DeviceSession (device access)
- ChainStatePort (assembly-time reads)
- BroadcastPort (optional, submit/confirm)

Typical use:
    pipeline = SigningPipeline(get_device_session(), RoutingChainState())
    prepared = await pipeline.prepare(NativeTransfer(network="base", to=..., amount=Decimal("0.1")))
    signed = await pipeline.sign(prepared)
    tx_id = await pipeline.submit(signed)
"""

import dataclasses
import logging
from typing import Optional, Union

from hwbridge.assembly.base import TransactionAssembler
from hwbridge.assembly.evm import EvmTransactionAssembler
from hwbridge.assembly.resolver import NonceFeeResolver
from hwbridge.assembly.solana import SolanaTransactionAssembler
from hwbridge.chains import ChainFamily, get_profile
from hwbridge.config import get_settings
from hwbridge.derivation import DerivationPath, parse_path
from hwbridge.device.base import DeviceAddress
from hwbridge.device.session import DeviceSession
from hwbridge.errors import HWBridgeError, InvalidParameters
from hwbridge.models import PreparedTransaction, SignedTransaction, TxStatus, UnsignedIntent
from hwbridge.ports import BroadcastPort, ChainStatePort
from hwbridge.signing.coordinator import SigningCoordinator

logger = logging.getLogger(__name__)

PathLike = Union[str, DerivationPath, None]


class SigningPipeline:
    """Prepare, sign and publish transactions through one device session."""

    def __init__(
        self,
        session: DeviceSession,
        chain_state: ChainStatePort,
        broadcast: Optional[BroadcastPort] = None,
        acquire_timeout: Optional[float] = None,
    ):
        self.session = session
        self.chain_state = chain_state
        self.broadcast = broadcast
        self.resolver = NonceFeeResolver(chain_state)
        self.assemblers: dict[ChainFamily, TransactionAssembler] = {
            ChainFamily.EVM: EvmTransactionAssembler(chain_state, self.resolver),
            ChainFamily.SOLANA: SolanaTransactionAssembler(chain_state, self.resolver),
        }
        self.coordinator = SigningCoordinator(session, chain_state, acquire_timeout=acquire_timeout)

    def resolve_path(self, family: ChainFamily, path: PathLike = None) -> DerivationPath:
        """Validated path, defaulting to the configured path for the family."""
        if path is None:
            settings = get_settings()
            path = settings.default_evm_path if family == ChainFamily.EVM else settings.default_solana_path
        if isinstance(path, DerivationPath):
            path.validate_for(family)
            return path
        return parse_path(path, family)

    async def get_address(self, network: str, path: PathLike = None, display: bool = False) -> DeviceAddress:
        """Device address for network at path (shown on the device when display)."""
        family = get_profile(network).family
        return await self.coordinator.get_address(self.resolve_path(family, path), family, display)

    async def prepare(self, intent: UnsignedIntent, path: PathLike = None) -> PreparedTransaction:
        """Assemble intent; the sender is read from the device when omitted."""
        family = get_profile(intent.network).family
        if intent.sender is None:
            address = await self.get_address(intent.network, path)
            intent = dataclasses.replace(intent, sender=address.address)
        try:
            return await self.assemblers[family].prepare(intent)
        except HWBridgeError as e:
            raise e.annotate(network=intent.network, address=intent.sender)

    async def sign(self, prepared: PreparedTransaction, path: PathLike = None) -> SignedTransaction:
        return await self.coordinator.sign(prepared, self.resolve_path(prepared.family, path))

    async def prepare_and_sign(self, intent: UnsignedIntent, path: PathLike = None) -> SignedTransaction:
        prepared = await self.prepare(intent, path)
        return await self.sign(prepared, path)

    async def submit(self, signed: SignedTransaction) -> str:
        """Broadcast signed bytes, returning the network's transaction id."""
        broadcast = self._require_broadcast()
        tx_id = await broadcast.submit(signed.raw, signed.prepared.network)
        if tx_id != signed.tx_id:
            logger.warning(f"Broadcast returned {tx_id}, expected {signed.tx_id}")
        return tx_id

    async def confirm(self, tx_id: str, network: str) -> TxStatus:
        return await self._require_broadcast().confirm(tx_id, network)

    async def close(self) -> None:
        await self.session.close()

    def _require_broadcast(self) -> BroadcastPort:
        if self.broadcast is None:
            raise InvalidParameters(
                "No broadcast port configured",
                hint="Pass broadcast= to SigningPipeline, or submit signed.raw yourself",
                component="SigningPipeline",
            )
        return self.broadcast
