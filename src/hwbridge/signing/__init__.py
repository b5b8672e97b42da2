"""Transaction signing through the hardware device.

- SigningCoordinator: signs PreparedTransactions via DeviceSession and
  builds broadcastable SignedTransactions
"""

from hwbridge.signing.coordinator import SigningCoordinator, extract_signed_message

__all__ = ["SigningCoordinator", "extract_signed_message"]
