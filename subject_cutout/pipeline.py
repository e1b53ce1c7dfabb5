from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence, Tuple

from .composite import PipelineResult, compose, encode_png
from .config import CONSTRAINED_BUDGET, FAST_BUDGET, QUALITY_BUDGET, SUBJECT_LABELS
from .contracts import FAST, QUALITY, RefinementConfig
from .errors import DecodeError, PipelineCancelled, PipelineError, SegmentationError
from .inference import SegmentationAdapter, select_candidate
from .log import LogContext, get_logger
from .model import ModelService
from .pool import BufferPool
from .postprocess import MaskRefiner, resample_mask
from .preprocess import ImageResizer, ImageSource, decode_image
from .raster import RasterBuffer

logger = get_logger(__name__)


class DeviceCapability(Protocol):
    def is_low_power(self) -> bool: ...

    def is_low_memory(self) -> bool: ...


@dataclass(frozen=True)
class StaticDeviceCapability:
    low_power: bool = False
    low_memory: bool = False

    def is_low_power(self) -> bool:
        return self.low_power

    def is_low_memory(self) -> bool:
        return self.low_memory


def select_variant(capability: Optional[DeviceCapability]) -> Tuple[RefinementConfig, int]:
    """
    Constrained devices get the Fast variant (640px budget when memory is low,
    832px otherwise); everything else gets Quality at 512px.
    """
    if capability is None:
        return QUALITY, QUALITY_BUDGET
    if capability.is_low_memory():
        return FAST, CONSTRAINED_BUDGET
    if capability.is_low_power():
        return FAST, FAST_BUDGET
    return QUALITY, QUALITY_BUDGET


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: int


ProgressReporter = Callable[[ProgressEvent], None]

STAGE_PERCENT = {
    "model-load": 10,
    "resize": 25,
    "inference": 50,
    "mask-processing": 70,
    "feathering": 85,
    "complete": 100,
}


class CancelToken:
    """Cooperative cancellation, checked between pipeline stages."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self._cancelled:
            raise PipelineCancelled("Background removal was cancelled", stage=stage)


@dataclass(frozen=True)
class CutoutOutcome:
    """
    Either a cutout or the (resized) original, both PNG-encoded.

    `kept_original` is a regular outcome: the caller shows the unprocessed
    image when removal failed.
    """

    encoded: bytes
    kept_original: bool
    result: Optional[PipelineResult] = None
    error: Optional[PipelineError] = None


class PipelineOrchestrator:
    """
    Runs resize -> segment -> resample -> refine -> composite for one image at a time
    per call; calls may overlap and share only the model service.
    """

    def __init__(
        self,
        model_service: ModelService,
        capability: Optional[DeviceCapability] = None,
        pool: Optional[BufferPool] = None,
        priority: Sequence[str] = SUBJECT_LABELS,
    ):
        self.model_service = model_service
        self.capability = capability
        self.pool = pool if pool is not None else BufferPool()
        self.priority = tuple(priority)

    def plan(self, config: Optional[RefinementConfig] = None) -> Tuple[RefinementConfig, int]:
        """Refinement config and resolution budget for this device (explicit config wins)."""
        if config is None:
            return select_variant(self.capability)
        if not config.is_fast:
            return config, QUALITY_BUDGET
        low_memory = self.capability is not None and self.capability.is_low_memory()
        return config, CONSTRAINED_BUDGET if low_memory else FAST_BUDGET

    async def remove_background(
        self,
        image: ImageSource,
        config: Optional[RefinementConfig] = None,
        on_progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancelToken] = None,
    ) -> PipelineResult:
        config, budget = self.plan(config)
        cancel = cancel or CancelToken()
        t0 = time.perf_counter()

        def report(stage: str) -> None:
            if on_progress is not None:
                on_progress(ProgressEvent(stage=stage, percent=STAGE_PERCENT[stage]))

        with LogContext(request_id=uuid.uuid4().hex[:12]) as ctx:
            try:
                # Decode first so an unreadable upload fails before any model work.
                ctx.set_stage("decode")
                source = decode_image(image)
                cancel.raise_if_cancelled("decode")

                ctx.set_stage("model-load")
                async with self.model_service.lease() as adapter:
                    report("model-load")
                    cancel.raise_if_cancelled("model-load")

                    ctx.set_stage("resize")
                    raster = ImageResizer(budget).resize(source)
                    report("resize")
                    cancel.raise_if_cancelled("resize")

                    ctx.set_stage("inference")
                    candidate = await self._segment(adapter, raster)
                    report("inference")
                    cancel.raise_if_cancelled("inference")

                ctx.set_stage("mask-processing")
                mask = resample_mask(candidate.mask, raster.width, raster.height)
                report("mask-processing")

                def on_pass(name: str) -> None:
                    if name == "feathering":
                        cancel.raise_if_cancelled("mask-processing")
                        report("feathering")

                alpha = MaskRefiner(config, self.pool).refine(mask.values, on_pass=on_pass)
                cancel.raise_if_cancelled("mask-processing")

                ctx.set_stage("encode")
                result = await asyncio.to_thread(compose, raster, alpha)
                report("complete")
            except PipelineError as e:
                logger.warning(
                    "pipeline_failed",
                    error=e.message,
                    error_type=type(e).__name__,
                    duration_ms=int((time.perf_counter() - t0) * 1000),
                )
                raise

            logger.info(
                "pipeline_complete",
                variant=config.variant,
                width=raster.width,
                height=raster.height,
                candidate=candidate.label,
                duration_ms=int((time.perf_counter() - t0) * 1000),
            )
            return result

    async def _segment(self, adapter: SegmentationAdapter, raster: RasterBuffer):
        # The adapter gets its own copy; the raster is composited later.
        try:
            candidates = await asyncio.to_thread(adapter.segment, raster.copy())
        except PipelineError:
            raise
        except Exception as e:  # noqa: BLE001 - typed for the caller
            raise SegmentationError(f"Segmentation failed: {type(e).__name__}: {e}") from e
        return select_candidate(candidates, self.priority)

    async def remove_background_or_original(
        self,
        image: ImageSource,
        config: Optional[RefinementConfig] = None,
        on_progress: Optional[ProgressReporter] = None,
        cancel: Optional[CancelToken] = None,
    ) -> CutoutOutcome:
        """
        Like `remove_background`, but any pipeline failure yields the resized
        original instead. Decode failures still raise: there is no original to keep.
        """
        try:
            result = await self.remove_background(image, config, on_progress, cancel)
        except (PipelineCancelled, DecodeError):
            raise
        except PipelineError as e:
            source = decode_image(image)
            _, budget = self.plan(config)
            original = ImageResizer(budget).resize(source)
            encoded = await asyncio.to_thread(encode_png, original)
            return CutoutOutcome(encoded=encoded, kept_original=True, error=e)
        return CutoutOutcome(encoded=result.encoded, kept_original=False, result=result)


async def remove_background(
    image: ImageSource,
    model_service: ModelService,
    config: Optional[RefinementConfig] = None,
    on_progress: Optional[ProgressReporter] = None,
    capability: Optional[DeviceCapability] = None,
) -> bytes:
    """Single-call entry point: PNG bytes of the cutout, or a PipelineError."""
    orchestrator = PipelineOrchestrator(model_service, capability=capability)
    result = await orchestrator.remove_background(image, config=config, on_progress=on_progress)
    return result.encoded
