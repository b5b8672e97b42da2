"""Utility modules for hwbridge."""

from hwbridge.utils.locks import LockTimeoutError, SingleFlight, acquire_with_timeout

__all__ = ["LockTimeoutError", "SingleFlight", "acquire_with_timeout"]
