"""
Transports that carry one inference call to an endpoint.
"""

from typing import Any, Dict, Optional, Protocol

import httpx

from recommender.shared.config import InferenceConfig, settings
from recommender.shared.exceptions import EndpointUnavailableError, InvalidResponseError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class InferenceTransport(Protocol):
    """Sends a JSON-like payload to a named endpoint and returns its JSON-like answer."""

    async def send(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


class HttpTransport:
    """POSTs payloads as JSON to `{base_url}/{endpoint}`."""

    def __init__(self, config: Optional[InferenceConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or settings.inference
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Deadlines are enforced by the caller; no transport-level timeout.
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=None,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = await self._ensure_client()
        url = self.config.url_for(endpoint)

        try:
            response = await client.post(url, json=payload)
        except httpx.RequestError as e:
            raise EndpointUnavailableError(f"Cannot reach {endpoint}: {e}", endpoint) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise EndpointUnavailableError(
                f"{endpoint} returned HTTP {response.status_code}", endpoint
            )
        if response.status_code != 200:
            raise InvalidResponseError(
                f"{endpoint} returned HTTP {response.status_code}", endpoint
            )

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"{endpoint} returned non-JSON body", endpoint) from e

        if not isinstance(body, dict):
            raise InvalidResponseError(f"{endpoint} returned {type(body).__name__}, expected object", endpoint)

        return body
