"""
JSON-over-HTTP transport for upstream calls.

The transport only moves bytes: it returns whatever status the upstream
answered with and leaves interpretation to the API layer. Network failures
and timeouts are raised as TransportError.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from image_relay.core.errors import TransportError


@dataclass(frozen=True)
class TransportResponse:
    """Status and decoded body of one upstream response."""
    status_code: int
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Transport:
    """Interface: send JSON, get JSON-or-error."""

    async def call(
        self,
        endpoint: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
    ) -> TransportResponse:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def decode_body(text: str) -> Any:
    """Decode a JSON body, returning None for empty or non-JSON text."""
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


class HttpxTransport(Transport):
    """Transport backed by a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Prefix joined with each endpoint path
            timeout: Per-request timeout in seconds
            client: Pre-built client (tests inject one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def _url(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def call(
        self,
        endpoint: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
    ) -> TransportResponse:
        request_headers = {"Content-Type": "application/json"}
        request_headers.update(headers or {})
        try:
            response = await self._get_client().request(
                method,
                self._url(endpoint),
                headers=request_headers,
                json=json_body,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", timeout=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

        text = response.text
        return TransportResponse(
            status_code=response.status_code,
            body=decode_body(text),
            text=text,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
