"""Minimal async JSON-RPC 2.0 client over httpx.

Every failure (transport, HTTP status, malformed body, RPC error object)
surfaces as ChainStateUnavailable tagged with the operation name.
"""

import itertools
import logging
from typing import Any, Optional

import httpx

from hwbridge.errors import ChainStateUnavailable

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class JsonRpcClient:
    """JSON-RPC client for one endpoint.

    Args:
        url: RPC endpoint
        network: Network name used in error context
        timeout: Request timeout in seconds
        client: Shared httpx.AsyncClient (a short-lived client per call
            is used when omitted)
    """

    def __init__(
        self,
        url: str,
        network: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.network = network
        self.timeout = timeout
        self._client = client

    async def call(self, method: str, params: Optional[list] = None, operation: Optional[str] = None) -> Any:
        """Invoke method and return its result field."""
        operation = operation or method
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else [],
            "id": next(_request_ids),
        }

        if not self.url:
            raise ChainStateUnavailable(
                f"No RPC URL configured for {self.network}",
                operation=operation,
                component="JsonRpcClient",
                network=self.network,
            )

        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"RPC {method} failed on {self.network}: {e}")
            raise ChainStateUnavailable(
                f"RPC request {method} failed: {e}",
                operation=operation,
                component="JsonRpcClient",
                network=self.network,
            ) from e

        if response.status_code != 200:
            raise ChainStateUnavailable(
                f"RPC {method} returned HTTP {response.status_code}",
                operation=operation,
                component="JsonRpcClient",
                network=self.network,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ChainStateUnavailable(
                f"RPC {method} returned invalid JSON",
                operation=operation,
                component="JsonRpcClient",
                network=self.network,
            ) from e

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning(f"RPC {method} error on {self.network}: {message}")
            raise ChainStateUnavailable(
                f"RPC {method} error: {message}",
                operation=operation,
                component="JsonRpcClient",
                network=self.network,
            )

        return data.get("result")


def hex_to_int(value: Optional[str]) -> int:
    """Parse a 0x-prefixed quantity ("0x" and None mean 0)."""
    if not value or value == "0x":
        return 0
    return int(value, 16)
