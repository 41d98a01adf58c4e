"""
Domain values exchanged between the orchestration layers.

Requests and results are immutable; retries reuse the same value.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class GenerationRequest:
    """Parameters of one image generation."""
    prompt: str
    width: int
    height: int
    steps: int
    seed: int
    model: str
    provider: str
    negative_prompt: str = ""

    def __post_init__(self):
        """Validate request values."""
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if not self.provider:
            raise ValueError("provider is required")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("width and height must be > 0")
        if self.steps <= 0:
            raise ValueError("steps must be > 0")

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for the generate endpoint."""
        return {
            "provider": self.provider,
            "model": self.model,
            "prompt": self.prompt,
            "negativePrompt": self.negative_prompt,
            "width": self.width,
            "height": self.height,
            "steps": self.steps,
            "seed": self.seed,
        }


@dataclass(frozen=True)
class ImageResult:
    """Image details returned by a provider. Opaque apart from ``url``."""
    url: str
    provider: str
    model: str
    steps: int
    seed: int
    duration: str = ""
    prompt: str = ""
    negative_prompt: str = ""
    dimensions: str = ""

    def with_url(self, url: str) -> "ImageResult":
        return replace(self, url=url)

    @classmethod
    def from_payload(cls, data: Dict[str, Any], request: Optional[GenerationRequest] = None) -> "ImageResult":
        """Build a result from an ``imageDetails`` object.

        Missing descriptive fields fall back to the originating request.

        Raises:
            ValueError: If the payload carries no usable url
        """
        url = data.get("url")
        if not isinstance(url, str) or not url:
            raise ValueError("No image url returned")

        def _int(key: str, fallback: int) -> int:
            value = data.get(key)
            try:
                return int(value) if value is not None else fallback
            except (TypeError, ValueError):
                return fallback

        return cls(
            url=url,
            provider=str(data.get("provider") or (request.provider if request else "")),
            model=str(data.get("model") or (request.model if request else "")),
            steps=_int("steps", request.steps if request else 0),
            seed=_int("seed", request.seed if request else 0),
            duration=str(data.get("duration") or ""),
            prompt=str(data.get("prompt") or (request.prompt if request else "")),
            negative_prompt=str(
                data.get("negativePrompt") or (request.negative_prompt if request else "")
            ),
            dimensions=str(data.get("dimensions") or ""),
        )
