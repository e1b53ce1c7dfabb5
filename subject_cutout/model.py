from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import torch

from .config import ALTERNATE_HF_REPO, MODEL_INPUT_SIZE, PRIMARY_HF_REPO
from .errors import ModelLoadFailure
from .inference import ColorThresholdAdapter, SegmentationAdapter, TorchSegmentationAdapter
from .log import get_logger

logger = get_logger(__name__)

# Whether each known repo emits logits (sigmoid applied by the adapter) or probabilities.
HF_MODEL_LOGITS: Dict[str, bool] = {
    PRIMARY_HF_REPO: True,
    ALTERNATE_HF_REPO: False,
}


def accelerated_device() -> Optional[torch.device]:
    """CUDA or MPS if available, else None."""
    if torch.cuda.is_available():
        return torch.device("cuda")
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return torch.device("mps")
    return None


def get_device() -> torch.device:
    return accelerated_device() or torch.device("cpu")


def _freeze(model: torch.nn.Module, device: torch.device) -> torch.nn.Module:
    model.eval()
    for p in model.parameters():
        p.requires_grad_(False)
    # Always float32 (reject fp16).
    return model.to(dtype=torch.float32).to(device)


def load_torchscript_adapter(model_path: str, device: Optional[torch.device] = None) -> TorchSegmentationAdapter:
    """
    Load a TorchScript matting/segmentation model saved via torch.jit.save (extension can be .pth).

    Pure state_dict checkpoints require the original model code and are rejected.
    """
    if device is None:
        device = get_device()
    if not os.path.exists(model_path):
        raise FileNotFoundError(f"Model not found: {model_path}")

    try:
        # Registers torchvision custom TorchScript ops (e.g. deform_conv2d) before loading.
        import torchvision  # noqa: F401

        # Load on CPU first; some archives carry float64 attributes that cannot move to MPS.
        model = torch.jit.load(model_path, map_location="cpu")
    except Exception as e:  # noqa: BLE001 - surface a helpful error
        raise RuntimeError(
            "Failed to load model. Expected a TorchScript module saved with torch.jit.save(); "
            "a state_dict .pth must be exported to TorchScript first."
        ) from e

    return TorchSegmentationAdapter(_freeze(model, device), device)


def load_hf_adapter(hf_repo: str = PRIMARY_HF_REPO, device: Optional[torch.device] = None) -> TorchSegmentationAdapter:
    """
    Load an image-segmentation model via Hugging Face transformers (trust_remote_code).

    Meta-device init paths are disabled; some remote model code calls `.item()` during construction.
    """
    if device is None:
        device = get_device()

    try:
        from transformers import AutoModelForImageSegmentation
    except Exception as e:  # noqa: BLE001
        raise RuntimeError("transformers is not installed. Run: pip install transformers") from e

    model = AutoModelForImageSegmentation.from_pretrained(
        hf_repo,
        trust_remote_code=True,
        low_cpu_mem_usage=False,
        device_map=None,
    )
    return TorchSegmentationAdapter(
        _freeze(model, device),
        device,
        input_size=MODEL_INPUT_SIZE,
        labels=("foreground",),
        logits=HF_MODEL_LOGITS.get(hf_repo, True),
    )


@dataclass(frozen=True)
class ModelBackend:
    """One entry of the load fallback chain."""

    name: str
    loader: Callable[[], SegmentationAdapter]


def backend_from_spec(spec: str, device: Optional[torch.device] = None) -> ModelBackend:
    """
    Parse a model spec: "hf:<repo>", "birefnet", "color" or a TorchScript file path.
    """
    if spec in ("birefnet", "hf:birefnet"):
        spec = f"hf:{PRIMARY_HF_REPO}"
    if spec.startswith("hf:"):
        repo = spec[len("hf:") :]
        device_type = (device or get_device()).type
        return ModelBackend(f"{repo}@{device_type}", partial(load_hf_adapter, repo, device))
    if spec == "color":
        return color_threshold_backend()
    return ModelBackend(f"torchscript:{os.path.basename(spec)}", partial(load_torchscript_adapter, spec, device))


def color_threshold_backend() -> ModelBackend:
    return ModelBackend("color-threshold", ColorThresholdAdapter)


def default_backends(
    primary_repo: str = PRIMARY_HF_REPO,
    alternate_repo: str = ALTERNATE_HF_REPO,
    *,
    color_fallback: bool = False,
) -> List[ModelBackend]:
    """
    Ordered fallback chain: accelerated device -> CPU -> alternate model on CPU
    (-> color threshold when requested).
    """
    cpu = torch.device("cpu")
    backends: List[ModelBackend] = []
    accel = accelerated_device()
    if accel is not None:
        backends.append(ModelBackend(f"{primary_repo}@{accel.type}", partial(load_hf_adapter, primary_repo, accel)))
    backends.append(ModelBackend(f"{primary_repo}@cpu", partial(load_hf_adapter, primary_repo, cpu)))
    if alternate_repo and alternate_repo != primary_repo:
        backends.append(ModelBackend(f"{alternate_repo}@cpu", partial(load_hf_adapter, alternate_repo, cpu)))
    if color_fallback:
        backends.append(color_threshold_backend())
    return backends


class ModelState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    DISPOSED = "disposed"


class ModelService:
    """
    Owns the long-lived segmentation adapter.

    UNLOADED -> LOADING -> READY, READY -> DISPOSED. Concurrent `load()` calls
    share one in-flight load; a failed load returns to UNLOADED. `lease()` holds
    a reference while a request uses the adapter; `dispose()` with live leases
    is deferred until the last one is released.
    """

    def __init__(self, backends: Sequence[ModelBackend]):
        if not backends:
            raise ValueError("ModelService needs at least one backend")
        self._backends = list(backends)
        self._state = ModelState.UNLOADED
        self._adapter: Optional[SegmentationAdapter] = None
        self._backend_name: Optional[str] = None
        self._load_task: Optional[asyncio.Future] = None
        self._refs = 0
        self._dispose_pending = False
        self.load_count = 0

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def backend_name(self) -> Optional[str]:
        return self._backend_name

    @property
    def refs(self) -> int:
        return self._refs

    def is_ready(self) -> bool:
        return self._state is ModelState.READY and not self._dispose_pending

    async def load(self) -> SegmentationAdapter:
        if self._state is ModelState.DISPOSED or self._dispose_pending:
            raise ModelLoadFailure("Model service has been disposed")
        if self._state is ModelState.READY and self._adapter is not None:
            return self._adapter
        if self._load_task is None:
            self._state = ModelState.LOADING
            self._load_task = asyncio.ensure_future(self._load_chain())
        # Shielded so a cancelled waiter does not abort the shared load.
        adapter = await asyncio.shield(self._load_task)
        # dispose() may have run between the load finishing and this waiter resuming.
        if self._state is ModelState.DISPOSED or self._dispose_pending:
            raise ModelLoadFailure("Model service was disposed while loading")
        return adapter

    async def _load_chain(self) -> SegmentationAdapter:
        self.load_count += 1
        attempts: List[Dict[str, str]] = []
        try:
            for backend in self._backends:
                try:
                    adapter = await asyncio.to_thread(backend.loader)
                except Exception as e:  # noqa: BLE001 - fall through to the next backend
                    attempts.append({"backend": backend.name, "error": f"{type(e).__name__}: {e}"})
                    logger.warning(
                        "model_backend_failed",
                        backend=backend.name,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                self._adapter = adapter
                self._backend_name = backend.name
                self._state = ModelState.READY
                logger.info("model_ready", backend=backend.name, attempts=len(attempts) + 1)
                return adapter

            raise ModelLoadFailure(
                f"All {len(self._backends)} model backends failed to load",
                attempts=attempts,
            )
        finally:
            self._load_task = None
            if self._state is ModelState.LOADING:
                self._state = ModelState.UNLOADED

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[SegmentationAdapter]:
        adapter = await self.load()
        self._refs += 1
        try:
            yield adapter
        finally:
            self._refs -= 1
            if self._refs == 0 and self._dispose_pending:
                self._close()

    def dispose(self) -> None:
        """Release the model. Deferred while leases are held; a no-op once disposed."""
        if self._state is ModelState.DISPOSED:
            return
        if self._state is ModelState.LOADING:
            raise RuntimeError("Cannot dispose the model service while a load is in flight")
        if self._refs > 0:
            self._dispose_pending = True
            return
        self._close()

    def _close(self) -> None:
        adapter = self._adapter
        self._adapter = None
        self._dispose_pending = False
        self._state = ModelState.DISPOSED
        close = getattr(adapter, "close", None)
        if callable(close):
            close()
        logger.info("model_disposed", backend=self._backend_name)
