"""
Quote source client for forex rates.
"""

from typing import Any, Dict, Optional, Protocol

import httpx

from zeno_shared.errors import UpstreamError
from zeno_shared.logging import get_logger


class ForexSource(Protocol):
    """Anything that can produce the latest raw forex payload."""

    async def fetch(self) -> Dict[str, Any]:
        ...


class OpenExchangeRatesClient:
    """Fetches ``latest.json`` from Open Exchange Rates."""

    def __init__(
        self,
        app_id: str,
        url: str = "https://openexchangerates.org/api/latest.json",
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self._app_id = app_id
        self.logger = get_logger("gateway.forex_client")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def fetch(self) -> Dict[str, Any]:
        """Return the decoded JSON payload; raises ``UpstreamError`` on failure."""
        try:
            response = await self._client.get(self.url, params={"app_id": self._app_id})
        except httpx.HTTPError as exc:
            raise UpstreamError("forex", f"Forex request failed: {type(exc).__name__}")

        if response.status_code != 200:
            raise UpstreamError(
                "forex",
                f"Unexpected status {response.status_code}",
                details={"upstream_status": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError:
            raise UpstreamError("forex", "Forex payload is not JSON")

        if not isinstance(payload, dict):
            raise UpstreamError("forex", "Forex payload is not an object")
        return payload
