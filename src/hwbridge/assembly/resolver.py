"""Nonce, fee and gas/compute resolution.

Nonce:
- EVM nonce is the account's *pending* transaction count, or the caller's
  override verbatim. select_nonce is a pure function that never sees block
  height data, so a block number cannot leak into the nonce.
- Solana has no nonce; a recent blockhash bounds validity instead.

Fees:
- EIP-1559: max_fee = 2 * base_fee + priority_fee
- Legacy:   gas_price
- Solana:   lamports per signature + optional priority fee (micro-lamports/CU)
When the fee query fails the network's static fallback is used and the
quote is flagged estimated.
"""

import logging
import time
from decimal import ROUND_CEILING, Decimal
from typing import Callable, Optional

from hwbridge.chains import ChainProfile, FeeModel
from hwbridge.config import get_settings
from hwbridge.errors import ChainStateUnavailable, InvalidParameters
from hwbridge.models import Eip1559Fees, FeeFields, FeeQuote, LegacyFees, SolanaFees
from hwbridge.ports import ChainStatePort, FeeEstimate

logger = logging.getLogger(__name__)

# Defaults when gas estimation is unavailable
DEFAULT_GAS_LIMITS: dict[str, int] = {
    "native": 21_000,
    "erc20_transfer": 65_000,
    "erc20_approve": 50_000,
    "contract_call": 100_000,
}

FEE_TYPES: dict[FeeModel, type] = {
    FeeModel.EIP1559: Eip1559Fees,
    FeeModel.LEGACY: LegacyFees,
    FeeModel.SOLANA_PRIORITY_FEE: SolanaFees,
}


def select_nonce(pending_count: Optional[int], override: Optional[int] = None) -> int:
    """Pick the nonce for a new EVM transaction.

    Args:
        pending_count: Account's pending transaction count from chain state
        override: Caller-supplied nonce, used verbatim

    Raises:
        InvalidParameters: if neither value is a usable nonce
    """
    if override is not None:
        if override < 0:
            raise InvalidParameters(f"Nonce override must be >= 0, got {override}", component="resolver")
        return override
    if pending_count is None or pending_count < 0:
        raise InvalidParameters(
            f"Invalid pending transaction count: {pending_count}", component="resolver"
        )
    return pending_count


def apply_margin(estimate: int, margin: float) -> int:
    """estimate * (1 + margin), rounded up."""
    scaled = Decimal(estimate) * (Decimal(1) + Decimal(str(margin)))
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


class NonceFeeResolver:
    """Resolves nonce, fee and gas/compute fields from chain state.

    Fee quotes are cached per network for fee_cache_ttl seconds. The cache
    dict is replaced wholesale on every refresh, so concurrent readers see
    either the old or the new mapping, never a partial one.
    """

    def __init__(
        self,
        chain_state: ChainStatePort,
        gas_safety_margin: Optional[float] = None,
        fee_cache_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.chain_state = chain_state
        self.gas_safety_margin = gas_safety_margin if gas_safety_margin is not None else settings.gas_safety_margin
        self.fee_cache_ttl = fee_cache_ttl if fee_cache_ttl is not None else settings.fee_cache_ttl
        self.max_gas_limit = settings.max_gas_limit
        self.default_compute_units = settings.solana_default_compute_units
        self.default_priority_fee = settings.solana_default_priority_fee
        self._clock = clock
        self._fee_cache: dict[str, tuple[float, FeeQuote]] = {}

    # ======================
    # Nonce
    # ======================

    async def resolve_nonce(
        self,
        address: str,
        profile: ChainProfile,
        override: Optional[int] = None,
    ) -> Optional[int]:
        """Nonce for the next transaction from address (None on Solana)."""
        if profile.is_solana:
            if override is not None:
                raise InvalidParameters(
                    "Solana transactions take a recent blockhash, not a nonce",
                    component="resolver",
                    network=profile.name,
                )
            return None

        if override is not None:
            logger.info(f"Using caller nonce override {override} for {address} on {profile.name}")
            return select_nonce(None, override)

        pending = await self.chain_state.get_nonce_or_sequence(address, profile.name)
        return select_nonce(pending)

    # ======================
    # Fees
    # ======================

    async def resolve_fee(
        self,
        profile: ChainProfile,
        override: Optional[FeeFields] = None,
    ) -> FeeQuote:
        """Fee fields matching the network's fee model."""
        if override is not None:
            expected = FEE_TYPES[profile.fee_model]
            if not isinstance(override, expected):
                raise InvalidParameters(
                    f"{profile.name} uses {profile.fee_model.value} fees; "
                    f"got {override.__class__.__name__}",
                    component="resolver",
                    network=profile.name,
                )
            return FeeQuote(fees=override, estimated=False)

        cached = self._fee_cache.get(profile.name)
        now = self._clock()
        if cached and self.fee_cache_ttl and now - cached[0] < self.fee_cache_ttl:
            return cached[1]

        try:
            estimate = await self.chain_state.get_fee_estimate(profile.name)
        except ChainStateUnavailable as e:
            logger.warning(f"Fee query failed for {profile.name}, using static fallback: {e}")
            return FeeQuote(fees=self.fallback_fees(profile), estimated=True)

        fees = self._fees_from_estimate(profile, estimate)
        if fees is None:
            logger.warning(f"Fee estimate for {profile.name} has no usable fields, using static fallback")
            return FeeQuote(fees=self.fallback_fees(profile), estimated=True)

        quote = FeeQuote(fees=fees, estimated=False)
        self._fee_cache = {**self._fee_cache, profile.name: (now, quote)}
        return quote

    def fallback_fees(self, profile: ChainProfile) -> FeeFields:
        """Static per-network fees used when live data is unavailable."""
        if profile.fee_model == FeeModel.EIP1559:
            return Eip1559Fees(
                max_fee_per_gas=profile.fallback_max_fee_per_gas,
                max_priority_fee_per_gas=profile.fallback_priority_fee_per_gas,
            )
        if profile.fee_model == FeeModel.LEGACY:
            return LegacyFees(gas_price=profile.fallback_gas_price)
        return SolanaFees(
            base_fee_lamports=profile.lamports_per_signature,
            priority_fee_micro_lamports=self.default_priority_fee or None,
        )

    def _fees_from_estimate(self, profile: ChainProfile, estimate: FeeEstimate) -> Optional[FeeFields]:
        """Live fee fields, or None when the estimate lacks the model's base quantity."""
        if profile.fee_model == FeeModel.EIP1559:
            base_fee = estimate.base_fee_per_gas
            if base_fee is None:
                base_fee = estimate.gas_price
            if base_fee is None:
                return None
            priority = estimate.priority_fee_per_gas
            if priority is None:
                priority = profile.fallback_priority_fee_per_gas
            return Eip1559Fees(
                max_fee_per_gas=2 * base_fee + priority,
                max_priority_fee_per_gas=priority,
            )

        if profile.fee_model == FeeModel.LEGACY:
            gas_price = estimate.gas_price
            if gas_price is None:
                gas_price = estimate.base_fee_per_gas
            if gas_price is None:
                return None
            return LegacyFees(gas_price=gas_price)

        if not estimate.lamports_per_signature:
            return None
        priority = estimate.priority_fee_micro_lamports or self.default_priority_fee
        return SolanaFees(
            base_fee_lamports=estimate.lamports_per_signature,
            priority_fee_micro_lamports=priority or None,
        )

    # ======================
    # Gas / compute
    # ======================

    async def resolve_gas_limit(
        self,
        profile: ChainProfile,
        tx: dict,
        override: Optional[int] = None,
        default: int = DEFAULT_GAS_LIMITS["native"],
    ) -> tuple[int, bool]:
        """Gas limit and whether it fell back to a static default.

        Returns estimate + safety margin, the caller override, or default.
        """
        if override is not None:
            self._check_gas_limit(override, profile)
            return override, False

        try:
            estimate = await self.chain_state.estimate_gas(tx, profile.name)
        except (ChainStateUnavailable, NotImplementedError) as e:
            logger.warning(f"Gas estimation unavailable on {profile.name}, using default {default}: {e}")
            return default, True

        gas_limit = apply_margin(estimate, self.gas_safety_margin)
        self._check_gas_limit(gas_limit, profile)
        return gas_limit, False

    def _check_gas_limit(self, gas_limit: int, profile: ChainProfile) -> None:
        if gas_limit <= 0 or gas_limit > self.max_gas_limit:
            raise InvalidParameters(
                f"Gas limit {gas_limit} outside 1..{self.max_gas_limit}",
                component="resolver",
                network=profile.name,
            )

    async def resolve_compute_units(
        self,
        profile: ChainProfile,
        draft_message: Optional[bytes] = None,
        override: Optional[int] = None,
    ) -> tuple[int, bool]:
        """Compute unit limit and whether it fell back to the default.

        Simulates draft_message through the chain-state port when given.
        """
        if override is not None:
            if not 0 < override <= 1_400_000:
                raise InvalidParameters(
                    f"Compute unit limit {override} outside 1..1400000",
                    component="resolver",
                    network=profile.name,
                )
            return override, False

        if draft_message is None:
            return self.default_compute_units, True

        try:
            consumed = await self.chain_state.estimate_compute_units(draft_message, profile.name)
        except (ChainStateUnavailable, NotImplementedError) as e:
            logger.warning(f"Compute unit estimation unavailable on {profile.name}: {e}")
            return self.default_compute_units, True

        return min(apply_margin(consumed, self.gas_safety_margin), 1_400_000), False
