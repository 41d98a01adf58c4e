"""
Per-unit generation state machine.

A unit is one logical generation slot (a canvas node, a CLI invocation).
Its lifecycle is:

    IDLE -> PENDING -> SUCCEEDED
                    -> FAILED -> (restart) -> IDLE -> PENDING ...

The pipeline behind PENDING is a short sequence of steps:
1. Generate - the primary orchestrated call; failure ends the unit
2. Upscale - optional secondary call; failure only attaches an advisory
3. Record - best-effort history append; failure is logged and ignored
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ErrorCode, OrchestrationError, SecondaryOperationFailed
from .logger import logger
from .models import GenerationRequest, ImageResult


class UnitStatus(Enum):
    """States of a generation unit."""
    IDLE = "idle"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class GenerationUnit:
    """Mutable state of one generation slot, owned by its lifecycle."""
    id: str
    request: GenerationRequest
    status: UnitStatus = UnitStatus.IDLE
    result: Optional[ImageResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)
    advisory: Optional[SecondaryOperationFailed] = None
    history_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (UnitStatus.SUCCEEDED, UnitStatus.FAILED)


GenerateStep = Callable[[GenerationRequest], Awaitable[ImageResult]]
UpscaleStep = Callable[[ImageResult], Awaitable[str]]
RecordStep = Callable[[GenerationRequest, ImageResult], Awaitable[Optional[str]]]
ChangeCallback = Callable[[GenerationUnit], None]
TickCallback = Callable[[GenerationUnit, float], None]

DEFAULT_TICK_INTERVAL = 0.1


class GenerationLifecycle:
    """Guarantees at most one in-flight attempt per unit and reports progress."""

    def __init__(
        self,
        unit_id: str,
        request: GenerationRequest,
        generate: GenerateStep,
        upscale: Optional[UpscaleStep] = None,
        record: Optional[RecordStep] = None,
        on_change: Optional[ChangeCallback] = None,
        on_tick: Optional[TickCallback] = None,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize a lifecycle in the IDLE state.

        Args:
            unit_id: Identifier of the owning slot
            request: Immutable generation parameters
            generate: Primary step producing an ImageResult
            upscale: Optional secondary step returning a replacement url
            record: Optional history step returning the history id
            on_change: Called after every state transition
            on_tick: Called periodically with elapsed seconds while PENDING
            tick_interval: Seconds between ticks
            clock: Source of the current time
        """
        self.unit = GenerationUnit(id=unit_id, request=request)
        self._generate = generate
        self._upscale = upscale
        self._record = record
        self._on_change = on_change
        self._on_tick = on_tick
        self._tick_interval = tick_interval
        self._clock = clock
        self._task: Optional["asyncio.Task[GenerationUnit]"] = None
        self._ticker: Optional["asyncio.Task[None]"] = None
        self._discarded = False

    @property
    def status(self) -> UnitStatus:
        return self.unit.status

    @property
    def discarded(self) -> bool:
        return self._discarded

    def elapsed(self) -> float:
        """Seconds spent in (or up to the end of) the current attempt."""
        if self.unit.started_at is None:
            return 0.0
        end = self.unit.finished_at or self._clock()
        return (end - self.unit.started_at).total_seconds()

    def start(self) -> "asyncio.Task[GenerationUnit]":
        """Enter PENDING and schedule the pipeline.

        A call while PENDING or after a terminal state is a no-op that
        returns the existing task. Must be called from a running event loop.
        """
        if self.unit.status is not UnitStatus.IDLE:
            logger.debug("Unit {} already {}; start ignored", self.unit.id, self.unit.status.value)
            return self._task
        if self._discarded:
            raise RuntimeError(f"Unit {self.unit.id} has been discarded")

        self.unit.started_at = self._clock()
        self.unit.finished_at = None
        self._transition(UnitStatus.PENDING)
        self._task = asyncio.ensure_future(self._run())
        if self._on_tick is not None:
            self._ticker = asyncio.ensure_future(self._tick())
        return self._task

    def restart(self) -> "asyncio.Task[GenerationUnit]":
        """Leave FAILED, clear the previous outcome and start again."""
        if self.unit.status is not UnitStatus.FAILED:
            raise RuntimeError(
                f"Unit {self.unit.id} can only be restarted from failed, not {self.unit.status.value}"
            )
        self.unit.result = None
        self.unit.error = None
        self.unit.error_code = None
        self.unit.error_details = {}
        self.unit.advisory = None
        self.unit.history_id = None
        self._transition(UnitStatus.IDLE)
        return self.start()

    async def wait(self) -> GenerationUnit:
        """Await the current attempt, if any, and return the unit."""
        if self._task is not None:
            await self._task
        return self.unit

    def discard(self) -> None:
        """Detach the unit from its owner.

        An in-flight attempt runs to completion but its outcome is not
        stored; the history append still happens.
        """
        self._discarded = True
        self._stop_ticker()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self) -> GenerationUnit:
        request = self.unit.request
        try:
            result = await self._generate(request)
        except OrchestrationError as e:
            self._fail(str(e), e.reason, e.details)
            return self.unit
        except Exception as e:
            self._fail(str(e) or type(e).__name__, ErrorCode.INTERNAL_ERROR.value, {})
            raise

        result, advisory = await self._run_upscale(result)

        if not self._discarded:
            self.unit.result = result
            self.unit.advisory = advisory
            self.unit.finished_at = self._clock()
            self._stop_ticker()
            self._transition(UnitStatus.SUCCEEDED)
            logger.info("Unit {} succeeded in {:.1f}s", self.unit.id, self.elapsed())

        history_id = await self._run_record(request, result)
        if history_id is not None and not self._discarded:
            self.unit.history_id = history_id
        return self.unit

    async def _run_upscale(self, result: ImageResult):
        if self._upscale is None or not result.url.startswith("http"):
            return result, None
        try:
            url = await self._upscale(result)
        except OrchestrationError as e:
            logger.warning("Upscale for unit {} failed ({}); keeping original image", self.unit.id, e.reason)
            return result, SecondaryOperationFailed("upscale", cause=e, provider=e.provider)
        except Exception as e:
            logger.exception("Upscale for unit {} crashed; keeping original image", self.unit.id)
            return result, SecondaryOperationFailed("upscale", message=str(e) or type(e).__name__)
        return result.with_url(url), None

    async def _run_record(self, request: GenerationRequest, result: ImageResult) -> Optional[str]:
        if self._record is None:
            return None
        try:
            return await self._record(request, result)
        except Exception:
            logger.exception("Failed to record history for unit {}", self.unit.id)
            return None

    def _fail(self, message: str, code: str, details: Dict[str, Any]) -> None:
        if self._discarded:
            return
        self.unit.error = message
        self.unit.error_code = code
        self.unit.error_details = dict(details)
        self.unit.finished_at = self._clock()
        self._stop_ticker()
        self._transition(UnitStatus.FAILED)
        logger.error("Unit {} failed: {} ({})", self.unit.id, message, code)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _transition(self, status: UnitStatus) -> None:
        self.unit.status = status
        if self._on_change is not None and not self._discarded:
            self._on_change(self.unit)

    async def _tick(self) -> None:
        while self.unit.status is UnitStatus.PENDING and not self._discarded:
            self._on_tick(self.unit, self.elapsed())
            await asyncio.sleep(self._tick_interval)

    def _stop_ticker(self) -> None:
        if self._ticker is not None and not self._ticker.done():
            self._ticker.cancel()
        self._ticker = None


LifecycleFactory = Callable[[str, GenerationRequest], GenerationLifecycle]


class UnitRegistry:
    """Keeps exactly one lifecycle per unit id."""

    def __init__(self, factory: LifecycleFactory):
        self._factory = factory
        self._units: Dict[str, GenerationLifecycle] = {}

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._units

    def __len__(self) -> int:
        return len(self._units)

    def ensure(self, unit_id: str, request: GenerationRequest) -> GenerationLifecycle:
        """Return the unit's lifecycle, creating it on first use."""
        lifecycle = self._units.get(unit_id)
        if lifecycle is None:
            lifecycle = self._factory(unit_id, request)
            self._units[unit_id] = lifecycle
        return lifecycle

    def get(self, unit_id: str) -> Optional[GenerationLifecycle]:
        return self._units.get(unit_id)

    def start(self, unit_id: str, request: GenerationRequest) -> "asyncio.Task[GenerationUnit]":
        return self.ensure(unit_id, request).start()

    def remove(self, unit_id: str) -> None:
        """Drop a unit; an in-flight attempt finishes unobserved."""
        lifecycle = self._units.pop(unit_id, None)
        if lifecycle is not None:
            lifecycle.discard()

    def units(self) -> List[GenerationUnit]:
        return [lifecycle.unit for lifecycle in self._units.values()]
