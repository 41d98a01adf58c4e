"""
Single upstream calls for each relay endpoint.

Each method performs exactly one call with an optional secret and either
returns the parsed payload or raises an UpstreamCallError. Rotation and
retries belong to the orchestrator.
"""

from typing import Any, Dict, Optional

from image_relay.config.loader import ProviderDescriptor
from image_relay.core.errors import InvalidResponseBody, UpstreamResponseError
from image_relay.core.models import GenerationRequest, ImageResult

from .transport import Transport, TransportResponse

GENERATE_ENDPOINT = "/api/generate"
UPSCALE_ENDPOINT = "/api/upscale"
OPTIMIZE_ENDPOINT = "/api/optimize"
TRANSLATE_ENDPOINT = "/api/translate"


def auth_headers(provider: ProviderDescriptor, token: Optional[str]) -> Dict[str, str]:
    """Headers carrying the secret; empty for anonymous calls."""
    if not token:
        return {}
    return {provider.auth_header: token}


def _checked_body(response: TransportResponse) -> Dict[str, Any]:
    """Return the JSON object of a successful response or raise."""
    if not response.ok:
        raise UpstreamResponseError(response.status_code, response.body)
    if not response.text:
        raise InvalidResponseBody("Empty response from server")
    if not isinstance(response.body, dict):
        raise InvalidResponseBody(f"Invalid response: {response.text[:100]}")
    return response.body


class ImageApi:
    """Typed wrappers around the relay endpoints."""

    def __init__(self, transport: Transport):
        self.transport = transport

    async def generate(
        self,
        request: GenerationRequest,
        provider: ProviderDescriptor,
        token: Optional[str],
    ) -> ImageResult:
        response = await self.transport.call(
            GENERATE_ENDPOINT,
            headers=auth_headers(provider, token),
            json_body=request.to_payload(),
        )
        body = _checked_body(response)
        details = body.get("imageDetails")
        if not isinstance(details, dict):
            raise InvalidResponseBody("No image details returned")
        try:
            return ImageResult.from_payload(details, request)
        except ValueError as e:
            raise InvalidResponseBody(str(e)) from e

    async def upscale(
        self,
        url: str,
        scale: int,
        provider: ProviderDescriptor,
        token: Optional[str],
    ) -> str:
        response = await self.transport.call(
            UPSCALE_ENDPOINT,
            headers=auth_headers(provider, token),
            json_body={"url": url, "scale": scale},
        )
        body = _checked_body(response)
        upscaled = body.get("url")
        if not isinstance(upscaled, str) or not upscaled:
            raise InvalidResponseBody("No URL returned")
        return upscaled

    async def optimize(
        self,
        prompt: str,
        provider: ProviderDescriptor,
        token: Optional[str],
        model: Optional[str] = None,
        lang: str = "en",
        system_prompt: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {"prompt": prompt, "provider": provider.id, "lang": lang}
        if model:
            payload["model"] = model
        if system_prompt:
            payload["systemPrompt"] = system_prompt
        response = await self.transport.call(
            OPTIMIZE_ENDPOINT,
            headers=auth_headers(provider, token),
            json_body=payload,
        )
        body = _checked_body(response)
        optimized = body.get("optimized")
        if not isinstance(optimized, str) or not optimized.strip():
            raise InvalidResponseBody("No optimized prompt returned")
        return optimized

    async def translate(
        self,
        prompt: str,
        provider: ProviderDescriptor,
        token: Optional[str],
        model: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {"prompt": prompt, "provider": provider.id}
        if model:
            payload["model"] = model
        response = await self.transport.call(
            TRANSLATE_ENDPOINT,
            headers=auth_headers(provider, token),
            json_body=payload,
        )
        body = _checked_body(response)
        translated = body.get("translated")
        if not isinstance(translated, str) or not translated.strip():
            raise InvalidResponseBody("No translated prompt returned")
        return translated
