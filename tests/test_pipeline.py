import io

import numpy as np
import pytest
from PIL import Image

from subject_cutout import FAST, QUALITY, remove_background
from subject_cutout.errors import (
    DecodeError,
    ModelLoadFailure,
    NoSegmentationResult,
    NoSubjectDetected,
    PipelineCancelled,
    SegmentationError,
)
from subject_cutout.inference import SegmentationCandidate
from subject_cutout.model import ModelBackend, ModelService
from subject_cutout.pipeline import (
    CancelToken,
    PipelineOrchestrator,
    StaticDeviceCapability,
    select_variant,
)
from subject_cutout.pool import BufferPool
from subject_cutout.raster import Mask


class CenterAdapter:
    """Marks the central half of the frame as subject, at quarter resolution."""

    def __init__(self):
        self.seen = []

    def segment(self, raster):
        self.seen.append((raster.width, raster.height))
        w, h = max(1, raster.width // 4), max(1, raster.height // 4)
        values = np.zeros((h, w), dtype=np.float32)
        values[h // 4 : h - h // 4, w // 4 : w - w // 4] = 1.0
        return [
            SegmentationCandidate("background", Mask.from_array(1.0 - values)),
            SegmentationCandidate("person", Mask.from_array(values)),
        ]


class EmptyAdapter:
    def __init__(self, candidates):
        self.candidates = candidates

    def segment(self, raster):
        return list(self.candidates)


class ExplodingAdapter:
    def segment(self, raster):
        raise ValueError("tensor shape mismatch")


def _service(adapter):
    return ModelService([ModelBackend("fake", lambda: adapter)])


def _image(h=512, w=1024):
    rng = np.random.default_rng(3)
    return rng.integers(0, 256, size=(h, w, 3), dtype=np.uint8)


def _decode(data):
    with Image.open(io.BytesIO(data)) as img:
        assert img.mode == "RGBA"
        return np.array(img)


@pytest.mark.asyncio
async def test_quality_cutout_end_to_end():
    adapter = CenterAdapter()
    orchestrator = PipelineOrchestrator(_service(adapter))
    events = []
    result = await orchestrator.remove_background(_image(), on_progress=events.append)

    assert (result.raster.width, result.raster.height) == (512, 256)
    assert adapter.seen == [(512, 256)]
    assert [e.stage for e in events] == [
        "model-load",
        "resize",
        "inference",
        "mask-processing",
        "feathering",
        "complete",
    ]
    assert [e.percent for e in events] == sorted(e.percent for e in events)
    assert events[-1].percent == 100

    decoded = _decode(result.encoded)
    assert decoded.shape == (256, 512, 4)
    assert decoded[128, 256, 3] == 255
    assert decoded[5, 5, 3] == 0
    assert orchestrator.pool.in_use == 0
    assert orchestrator.model_service.refs == 0


@pytest.mark.asyncio
async def test_fast_variant_skips_feathering():
    orchestrator = PipelineOrchestrator(_service(CenterAdapter()))
    events = []
    result = await orchestrator.remove_background(_image(), config=FAST, on_progress=events.append)
    assert "feathering" not in [e.stage for e in events]
    assert events[-1].stage == "complete"
    # long side 1024 is bounded by the 832 budget
    assert (result.raster.width, result.raster.height) == (832, 416)


@pytest.mark.asyncio
async def test_input_is_not_modified():
    image = _image(64, 96)
    before = image.copy()
    await PipelineOrchestrator(_service(CenterAdapter())).remove_background(image)
    np.testing.assert_array_equal(image, before)


@pytest.mark.asyncio
async def test_no_subject_detected_releases_buffers():
    adapter = EmptyAdapter([SegmentationCandidate("person", None)])
    orchestrator = PipelineOrchestrator(_service(adapter), pool=BufferPool())
    with pytest.raises(NoSubjectDetected):
        await orchestrator.remove_background(_image(64, 64))
    assert orchestrator.pool.in_use == 0
    assert orchestrator.model_service.refs == 0


@pytest.mark.asyncio
async def test_empty_candidates():
    with pytest.raises(NoSegmentationResult):
        await PipelineOrchestrator(_service(EmptyAdapter([]))).remove_background(_image(32, 32))


@pytest.mark.asyncio
async def test_adapter_errors_are_typed():
    with pytest.raises(SegmentationError) as exc:
        await PipelineOrchestrator(_service(ExplodingAdapter())).remove_background(_image(32, 32))
    assert exc.value.stage == "inference"
    assert isinstance(exc.value.__cause__, ValueError)


@pytest.mark.asyncio
async def test_decode_error_before_model_load():
    service = _service(CenterAdapter())
    with pytest.raises(DecodeError):
        await PipelineOrchestrator(service).remove_background(b"not an image")
    assert service.load_count == 0


@pytest.mark.asyncio
async def test_model_load_failure_surfaces():
    def broken():
        raise OSError("weights missing")

    service = ModelService([ModelBackend("broken", broken)])
    with pytest.raises(ModelLoadFailure):
        await PipelineOrchestrator(service).remove_background(_image(32, 32))


@pytest.mark.asyncio
async def test_cancelled_before_start():
    service = _service(CenterAdapter())
    token = CancelToken()
    token.cancel()
    with pytest.raises(PipelineCancelled):
        await PipelineOrchestrator(service).remove_background(_image(32, 32), cancel=token)
    assert service.load_count == 0


@pytest.mark.asyncio
async def test_cancelled_mid_pipeline():
    adapter = CenterAdapter()
    service = _service(adapter)
    token = CancelToken()

    def on_progress(event):
        if event.stage == "resize":
            token.cancel()

    with pytest.raises(PipelineCancelled) as exc:
        await PipelineOrchestrator(service).remove_background(_image(), on_progress=on_progress, cancel=token)
    assert exc.value.stage == "resize"
    assert adapter.seen == []
    assert service.refs == 0


@pytest.mark.asyncio
async def test_keep_original_on_failure():
    orchestrator = PipelineOrchestrator(_service(EmptyAdapter([])))
    outcome = await orchestrator.remove_background_or_original(_image())
    assert outcome.kept_original
    assert isinstance(outcome.error, NoSegmentationResult)
    decoded = _decode(outcome.encoded)
    assert decoded.shape == (256, 512, 4)
    assert (decoded[..., 3] == 255).all()


@pytest.mark.asyncio
async def test_keep_original_passes_through_success():
    outcome = await PipelineOrchestrator(_service(CenterAdapter())).remove_background_or_original(_image(64, 64))
    assert not outcome.kept_original
    assert outcome.result is not None
    assert outcome.encoded == outcome.result.encoded


@pytest.mark.asyncio
async def test_keep_original_still_raises_on_decode_error():
    with pytest.raises(DecodeError):
        await PipelineOrchestrator(_service(CenterAdapter())).remove_background_or_original(b"")


@pytest.mark.asyncio
async def test_module_level_entry_point():
    data = await remove_background(_image(), _service(CenterAdapter()))
    assert _decode(data).shape == (256, 512, 4)


@pytest.mark.asyncio
async def test_low_memory_device_uses_constrained_budget():
    capability = StaticDeviceCapability(low_memory=True)
    orchestrator = PipelineOrchestrator(_service(CenterAdapter()), capability=capability)
    result = await orchestrator.remove_background(_image(512, 1024))
    assert (result.raster.width, result.raster.height) == (640, 320)


def test_select_variant():
    assert select_variant(None) == (QUALITY, 512)
    assert select_variant(StaticDeviceCapability()) == (QUALITY, 512)
    assert select_variant(StaticDeviceCapability(low_power=True)) == (FAST, 832)
    assert select_variant(StaticDeviceCapability(low_power=True, low_memory=True)) == (FAST, 640)


def test_plan_explicit_config():
    orchestrator = PipelineOrchestrator(_service(CenterAdapter()), capability=StaticDeviceCapability(low_power=True))
    assert orchestrator.plan(QUALITY) == (QUALITY, 512)
    assert orchestrator.plan(FAST) == (FAST, 832)
    assert orchestrator.plan() == (FAST, 832)
