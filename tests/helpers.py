"""
Test doubles shared by the test modules.
"""

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from image_relay.core.errors import TransportError, UpstreamResponseError
from image_relay.sdk.transport import Transport, TransportResponse


def quota_error(message: str = "Quota exceeded") -> UpstreamResponseError:
    return UpstreamResponseError(429, {"error": message, "code": "QUOTA_EXCEEDED"})


def auth_error() -> UpstreamResponseError:
    return UpstreamResponseError(401, {"error": "Invalid token", "code": "AUTH_INVALID"})


def server_error() -> UpstreamResponseError:
    return UpstreamResponseError(502, {"error": "Bad gateway", "code": "UPSTREAM_ERROR"})


def bad_request() -> UpstreamResponseError:
    return UpstreamResponseError(400, {"error": "Prompt rejected", "code": "INVALID_PROMPT"})


def timeout_error() -> TransportError:
    return TransportError("Request timed out", timeout=True)


class ScriptedOperation:
    """Operation closure whose outcome per token is scripted.

    Each token maps to a list of outcomes consumed in order; exceptions are
    raised, anything else is returned. Tokens without a script (or with an
    exhausted script) produce ``default``.
    """

    def __init__(self, outcomes: Optional[Dict[Optional[str], List[Any]]] = None, default: Any = "ok"):
        self.outcomes = {token: list(items) for token, items in (outcomes or {}).items()}
        self.default = default
        self.calls: List[Optional[str]] = []

    async def __call__(self, token: Optional[str]) -> Any:
        self.calls.append(token)
        queue = self.outcomes.get(token)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeTransport(Transport):
    """Transport answering from a handler and recording every call."""

    def __init__(self, handler: Callable[[str, Dict[str, str], Any], Any]):
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def call(self, endpoint, method="POST", headers=None, json_body=None):
        headers = dict(headers or {})
        self.calls.append({"endpoint": endpoint, "headers": headers, "body": json_body})
        outcome = self.handler(endpoint, headers, json_body)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def aclose(self):
        self.closed = True

    def calls_to(self, endpoint: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["endpoint"] == endpoint]


def json_response(status_code: int, body: Any) -> TransportResponse:
    return TransportResponse(status_code=status_code, body=body, text=json.dumps(body))


def image_details(url: str = "https://cdn.example.com/image.png", **overrides) -> Dict[str, Any]:
    details = {
        "url": url,
        "provider": "HuggingFace",
        "model": "Z-Image Turbo",
        "dimensions": "1024 x 1024",
        "duration": "3.2s",
        "seed": 42,
        "steps": 9,
        "prompt": "a lighthouse at dusk",
        "negativePrompt": "",
    }
    details.update(overrides)
    return details


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)
