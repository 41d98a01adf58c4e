"""
Image relay client.

Wires settings, credential storage, the token pool, the orchestrator and
the history ledger so that every operation goes through the same rotation
loop.
"""

import asyncio
import random
from datetime import datetime
from typing import Callable, Optional

from image_relay.config.loader import ProviderDescriptor, RelaySettings
from image_relay.core.lifecycle import (
    ChangeCallback,
    GenerationLifecycle,
    TickCallback,
    UnitRegistry,
)
from image_relay.core.logger import logger
from image_relay.core.models import GenerationRequest, ImageResult
from image_relay.core.orchestrator import RequestOrchestrator
from image_relay.core.token_pool import TokenPool
from image_relay.storage.credentials import CredentialStore
from image_relay.storage.history import HistoryLedger
from image_relay.storage.kv import KeyValueStore, SqliteKeyValueStore

from .api import ImageApi
from .transport import HttpxTransport, Transport

MAX_SEED = 2147483647


class ImageRelay:
    """Entry point for generation, upscaling and prompt operations.

    One instance holds the shared credential exhaustion state, so all units
    created from it rotate through the same pools.
    """

    def __init__(
        self,
        settings: Optional[RelaySettings] = None,
        transport: Optional[Transport] = None,
        store: Optional[KeyValueStore] = None,
        credentials: Optional[CredentialStore] = None,
        ledger: Optional[HistoryLedger] = None,
        pool: Optional[TokenPool] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize the relay.

        Args:
            settings: Relay configuration (defaults when omitted)
            transport: Upstream transport (httpx against ``settings.api_url`` when omitted)
            store: Persistence for credentials and history (SQLite at ``settings.history.db_path`` when omitted)
            credentials: Credential store override
            ledger: History ledger override
            pool: Token pool override
            clock: Source of the current time
        """
        self.settings = settings or RelaySettings()
        self.transport = transport or HttpxTransport(
            self.settings.api_url, timeout=self.settings.timeout_seconds
        )
        self.api = ImageApi(self.transport)

        if store is None and (credentials is None or ledger is None):
            store = SqliteKeyValueStore(self.settings.history.db_path)
        self.credentials = credentials or CredentialStore(store)
        self.ledger = ledger or HistoryLedger(
            store,
            ttl=self.settings.history.ttl,
            max_items=self.settings.history.max_items,
            clock=clock,
        )

        orchestration = self.settings.orchestration
        self.pool = pool or TokenPool(reset_after=orchestration.exhaustion_reset, clock=clock)
        self.orchestrator = RequestOrchestrator(
            self.pool,
            max_attempts=orchestration.max_attempts,
            transient_retries=orchestration.transient_retries,
            transient_backoff=orchestration.transient_backoff_seconds,
        )
        self._clock = clock
        self.units = UnitRegistry(self.lifecycle)

    async def _run(self, provider: ProviderDescriptor, operation):
        return await self.orchestrator.execute(
            operation,
            provider=provider.credential_pool,
            credentials=self.credentials.load(provider.credential_pool),
            requires_auth=provider.requires_auth,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> ImageResult:
        """Generate an image with credential rotation.

        Raises:
            KeyError: If the request names an unknown provider
            OrchestrationError: If no attempt succeeded
        """
        provider = self.settings.provider(request.provider)
        logger.info("Generating with {} ({})", provider.display_name, request.model)
        return await self._run(provider, lambda token: self.api.generate(request, provider, token))

    async def upscale(self, url: str, scale: Optional[int] = None) -> str:
        """Upscale an image through the configured upscale provider.

        Returns:
            Url of the upscaled image
        """
        provider = self.settings.provider(self.settings.upscale.provider)
        factor = scale or self.settings.upscale.scale
        return await self._run(provider, lambda token: self.api.upscale(url, factor, provider, token))

    async def optimize_prompt(
        self,
        prompt: str,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        lang: str = "en",
        system_prompt: Optional[str] = None,
    ) -> str:
        """Rewrite a prompt with an LLM provider."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        provider = self.settings.provider(provider_id or self.settings.llm.optimize_provider)
        model = model or self.settings.llm.optimize_model
        return await self._run(
            provider,
            lambda token: self.api.optimize(prompt, provider, token, model, lang, system_prompt),
        )

    async def translate_prompt(
        self,
        prompt: str,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Translate a prompt to English with an LLM provider."""
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        provider = self.settings.provider(provider_id or self.settings.llm.translate_provider)
        model = model or self.settings.llm.translate_model
        return await self._run(
            provider,
            lambda token: self.api.translate(prompt, provider, token, model),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def record(
        self,
        request: GenerationRequest,
        result: ImageResult,
        source: Optional[str] = "home",
    ) -> str:
        """Append a history entry without blocking the event loop."""
        return await asyncio.to_thread(
            self.ledger.append,
            url=result.url,
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            provider_id=request.provider,
            provider_name=result.provider or request.provider,
            model_id=request.model,
            model_name=result.model or request.model,
            width=request.width,
            height=request.height,
            steps=result.steps,
            seed=result.seed,
            duration=result.duration,
            source=source,
        )

    def lifecycle(
        self,
        unit_id: str,
        request: GenerationRequest,
        upscale: Optional[bool] = None,
        source: Optional[str] = "home",
        on_change: Optional[ChangeCallback] = None,
        on_tick: Optional[TickCallback] = None,
    ) -> GenerationLifecycle:
        """Build a lifecycle whose steps run through this relay.

        Args:
            unit_id: Identifier of the owning slot
            request: Generation parameters
            upscale: Chain an upscale step; defaults to ``settings.upscale.enabled``
            source: History source tag ("home" or "flow")
            on_change: Transition observer
            on_tick: Elapsed-time observer
        """
        if upscale is None:
            upscale = self.settings.upscale.enabled

        async def _upscale(result: ImageResult) -> str:
            return await self.upscale(result.url)

        async def _record(req: GenerationRequest, result: ImageResult) -> str:
            return await self.record(req, result, source=source)

        return GenerationLifecycle(
            unit_id,
            request,
            generate=self.generate,
            upscale=_upscale if upscale else None,
            record=_record,
            on_change=on_change,
            on_tick=on_tick,
            clock=self._clock,
        )

    def build_request(
        self,
        prompt: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        width: Optional[int] = None,
        height: Optional[int] = None,
        steps: Optional[int] = None,
        seed: Optional[int] = None,
        negative_prompt: str = "",
    ) -> GenerationRequest:
        """Fill omitted parameters from ``settings.defaults``."""
        defaults = self.settings.defaults
        provider = provider or defaults.provider
        self.settings.provider(provider)
        if seed is None:
            seed = random.randint(0, MAX_SEED)
        return GenerationRequest(
            prompt=prompt,
            width=width or defaults.width,
            height=height or defaults.height,
            steps=steps or defaults.steps,
            seed=seed,
            model=model or defaults.model,
            provider=provider,
            negative_prompt=negative_prompt,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "ImageRelay":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
