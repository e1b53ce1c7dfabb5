from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
import torch

from .config import COLOR_FALLBACK_DISTANCE, COLOR_FALLBACK_SAMPLES, MODEL_INPUT_SIZE, SUBJECT_LABELS
from .errors import NoSegmentationResult, NoSubjectDetected, SegmentationError
from .preprocess import normalize
from .raster import Mask, RasterBuffer


@dataclass(frozen=True)
class SegmentationCandidate:
    label: str
    mask: Optional[Mask]

    @property
    def usable(self) -> bool:
        return self.mask is not None and not self.mask.is_empty


@runtime_checkable
class SegmentationAdapter(Protocol):
    """External segmentation backend: one or more labeled probability masks per raster."""

    def segment(self, raster: RasterBuffer) -> List[SegmentationCandidate]: ...


def select_candidate(
    candidates: Sequence[SegmentationCandidate],
    priority: Sequence[str] = SUBJECT_LABELS,
) -> SegmentationCandidate:
    """
    Pick the subject mask.

    The first usable candidate (in returned order) whose label contains any of
    the priority labels, case-insensitively, wins; without a match the first
    usable candidate does.
    """
    if not candidates:
        raise NoSegmentationResult("Segmentation returned no candidates")

    usable = [c for c in candidates if c.usable]
    if not usable:
        raise NoSubjectDetected(
            "No segmentation candidate carried a usable mask",
            details={"labels": [c.label for c in candidates]},
        )

    wanted = [p.lower() for p in priority]
    for cand in usable:
        label = (cand.label or "").lower()
        if any(w in label for w in wanted):
            return cand
    return usable[0]


def _extract_primary_output(y):
    """
    Segmentation models may return:
      - a single tensor
      - (tensor, ...) tuple/list (final stage is typically last)
      - ([side outputs], [features]) nested lists (U2Net-style, first side output is final)
      - dict / ModelOutput with tensor fields
    """
    if isinstance(y, torch.Tensor):
        return y
    if isinstance(y, (list, tuple)) and len(y) > 0:
        if isinstance(y[0], (list, tuple)) and len(y[0]) > 0:
            return y[0][0]
        for item in reversed(y):
            if isinstance(item, torch.Tensor):
                return item
        return y[-1]
    if isinstance(y, dict):
        for k in ("logits", "pred", "alpha", "mask"):
            v = y.get(k, None)
            if isinstance(v, torch.Tensor):
                return v
        for v in y.values():
            if isinstance(v, torch.Tensor):
                return v
    return y


class TorchSegmentationAdapter:
    """
    Runs a torch segmentation/matting module and returns one candidate per output channel.

    Output is kept at model resolution; the pipeline resamples it to the raster.
    """

    def __init__(
        self,
        model: torch.nn.Module,
        device: torch.device,
        *,
        input_size: int = MODEL_INPUT_SIZE,
        labels: Sequence[str] = ("foreground",),
        logits: bool = True,
    ):
        self.model = model
        self.device = device
        self.input_size = int(input_size)
        self.labels = list(labels)
        self.logits = logits

    def segment(self, raster: RasterBuffer) -> List[SegmentationCandidate]:
        x = normalize(raster.rgb, self.input_size).to(self.device)
        with torch.no_grad():
            y = self.model(x)
        y = _extract_primary_output(y)
        if not isinstance(y, torch.Tensor):
            raise SegmentationError(f"Model output is not a tensor: {type(y)}")

        # Expect (1,C,H,W), (1,H,W) or (H,W)
        if y.ndim == 4:
            y = y[0]
        elif y.ndim == 2:
            y = y.unsqueeze(0)
        elif y.ndim != 3:
            raise SegmentationError(f"Unexpected output tensor shape: {tuple(y.shape)}")

        y = y.float()
        p = torch.sigmoid(y) if self.logits else y
        if torch.isnan(p).any():
            raise SegmentationError("NaNs detected in predicted mask.")

        probs = p.detach().to("cpu").numpy().astype(np.float32, copy=False)
        candidates = []
        for i, channel in enumerate(probs):
            label = self.labels[i] if i < len(self.labels) else f"class_{i}"
            candidates.append(SegmentationCandidate(label=label, mask=Mask.from_array(np.clip(channel, 0.0, 1.0))))
        return candidates

    def close(self) -> None:
        self.model = None


class ColorThresholdAdapter:
    """
    Model-free fallback: treats the average border color as background and marks
    pixels far enough from it (RGB distance) as subject.
    """

    def __init__(self, distance: float = COLOR_FALLBACK_DISTANCE, samples: int = COLOR_FALLBACK_SAMPLES):
        self.distance = float(distance)
        self.samples = max(1, int(samples))

    def background_color(self, rgb: np.ndarray) -> np.ndarray:
        h, w = rgb.shape[:2]
        xs = np.arange(0, w, max(1, w // self.samples))
        ys = np.arange(0, h, max(1, h // self.samples))
        border = np.concatenate(
            [rgb[0, xs], rgb[h - 1, xs], rgb[ys, 0], rgb[ys, w - 1]],
            axis=0,
        ).astype(np.float32)
        return border.mean(axis=0)

    def segment(self, raster: RasterBuffer) -> List[SegmentationCandidate]:
        rgb = raster.rgb.astype(np.float32)
        bg = self.background_color(raster.rgb)
        dist = np.sqrt(((rgb - bg.reshape(1, 1, 3)) ** 2).sum(axis=2))
        values = (dist > self.distance).astype(np.float32)
        return [SegmentationCandidate(label="subject", mask=Mask.from_array(values))]

    def close(self) -> None:
        return None
