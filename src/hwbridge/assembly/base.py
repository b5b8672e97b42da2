"""Base interface for transaction assemblers.

Assembly flow:
1. Validate addresses and amounts from the intent
2. Resolve nonce / blockhash and fees from chain state
3. Build the chain's unsigned message
4. Check size and balance limits
5. Return a PreparedTransaction for the SigningCoordinator
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from hwbridge.assembly.resolver import NonceFeeResolver
from hwbridge.chains import ChainFamily, ChainProfile, get_profile
from hwbridge.errors import InvalidParameters
from hwbridge.models import PreparedTransaction, UnsignedIntent
from hwbridge.ports import ChainStatePort

logger = logging.getLogger(__name__)


class TransactionAssembler(ABC):
    """Turns an UnsignedIntent into a PreparedTransaction for one chain family.

    Assemblers only read chain state and never touch the device, so any
    number of prepare() calls may run concurrently.
    """

    family: ChainFamily

    def __init__(
        self,
        chain_state: ChainStatePort,
        resolver: Optional[NonceFeeResolver] = None,
    ):
        self.chain_state = chain_state
        self.resolver = resolver or NonceFeeResolver(chain_state)

    @abstractmethod
    async def prepare(self, intent: UnsignedIntent) -> PreparedTransaction:
        """Build the unsigned transaction for intent.

        Raises:
            InvalidAddress, InvalidParameters, InsufficientBalance,
            MessageTooLarge and family-specific assembly errors
            ChainStateUnavailable: when a required chain query fails
        """
        pass

    def profile_for(self, intent: UnsignedIntent) -> ChainProfile:
        profile = get_profile(intent.network)
        if profile.family != self.family:
            raise InvalidParameters(
                f"{self.__class__.__name__} cannot build {profile.family.value} transactions",
                component=self.__class__.__name__,
                network=intent.network,
            )
        return profile

    def require_sender(self, intent: UnsignedIntent) -> str:
        if not intent.sender:
            raise InvalidParameters(
                "Sender address is required",
                hint="Pass sender, or prepare through SigningPipeline to resolve it from the device",
                component=self.__class__.__name__,
                network=intent.network,
            )
        return intent.sender

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(family={self.family.value})"
