from __future__ import annotations

import math
from contextlib import ExitStack
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import (
    ARTIFACT_KEEP_ALPHA,
    ARTIFACT_MIN_NEIGHBOR_FRACTION,
    ARTIFACT_OPAQUE_ALPHA,
    EDGE_BAND_HIGH,
    EDGE_BAND_LOW,
    EDGE_SNAP_CUTOFF,
    FEATHER_DAMP_BELOW,
    FEATHER_DAMP_FACTOR,
    FEATHER_KEEP_ABOVE,
    HOLE_CANDIDATE_ALPHA,
    HOLE_SUPPORT_ALPHA,
    SIGMOID_STEEPNESS,
)
from .contracts import QUALITY, RefinementConfig
from .pool import BufferPool
from .raster import Mask


def resample_mask(mask: Mask, dst_w: int, dst_h: int) -> Mask:
    """
    Bilinear resample of a mask to (dst_w, dst_h).

    Destination pixel (x, y) samples source coordinate (x*srcW/dstW, y*srcH/dstH)
    and blends its floor neighbor with the next one (clamped to the source
    bounds). Equal sizes return a clamped copy. Output is clamped to [0, 1].
    """
    if dst_w <= 0 or dst_h <= 0:
        raise ValueError(f"Invalid target size: {(dst_w, dst_h)}")
    if mask.is_empty:
        raise ValueError("Cannot resample an empty mask")

    src = mask.clamped().values
    src_h, src_w = src.shape
    if (src_w, src_h) == (dst_w, dst_h):
        return Mask(width=dst_w, height=dst_h, values=src)

    x0, x1, fx = _sample_axis(src_w, dst_w)
    y0, y1, fy = _sample_axis(src_h, dst_h)

    s = src.astype(np.float64, copy=False)
    fx = fx[None, :]
    fy = fy[:, None]
    top = s[y0][:, x0] * (1.0 - fx) + s[y0][:, x1] * fx
    bottom = s[y1][:, x0] * (1.0 - fx) + s[y1][:, x1] * fx
    out = top * (1.0 - fy) + bottom * fy

    out = np.clip(out, 0.0, 1.0).astype(np.float32)
    return Mask(width=dst_w, height=dst_h, values=out)


def _sample_axis(src_n: int, dst_n: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    coords = np.arange(dst_n, dtype=np.float64) * (float(src_n) / float(dst_n))
    lo = np.minimum(np.floor(coords).astype(np.intp), src_n - 1)
    hi = np.minimum(lo + 1, src_n - 1)
    frac = coords - lo
    return lo, hi, frac


# ---------------------------------------------------------------------------
# Refinement passes
#
# Every pass reads `src` and writes a full result into `out` (allocated when
# omitted). `out` must not alias `src`. Neighborhood passes leave pixels whose
# window does not fit inside the buffer unchanged.
# ---------------------------------------------------------------------------


def _prepare_out(src: np.ndarray, out: Optional[np.ndarray]) -> np.ndarray:
    if src.ndim != 2:
        raise ValueError(f"Expected 2D alpha buffer, got shape={src.shape}")
    if out is None:
        out = np.empty_like(src, dtype=np.float32)
    elif out is src or np.shares_memory(out, src):
        raise ValueError("Pass output buffer must not alias its input")
    elif out.shape != src.shape:
        raise ValueError(f"Output shape {out.shape} does not match input {src.shape}")
    np.copyto(out, src)
    return out


def _interior(shape: Tuple[int, int], margin: int) -> np.ndarray:
    inner = np.zeros(shape, dtype=bool)
    h, w = shape
    if h > 2 * margin and w > 2 * margin:
        inner[margin : h - margin, margin : w - margin] = True
    return inner


def _neighbor_counts(flags: np.ndarray, size: int) -> np.ndarray:
    """Number of set flags in each size x size window, excluding the center pixel."""
    f = flags.astype(np.float32)
    window = cv2.boxFilter(f, -1, (size, size), normalize=False, borderType=cv2.BORDER_CONSTANT)
    return np.rint(window - f)


def _threshold(src: np.ndarray, low: float, high: float, out: Optional[np.ndarray]) -> np.ndarray:
    out = _prepare_out(src, out)
    out[src < low] = 0.0
    out[src > high] = 1.0
    return out


def hard_clip(src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Snap near-certain values: below low_cut to 0, above high_cut to 1."""
    return _threshold(src, config.low_cut, config.high_cut, out)


def suppress_isolated_pixels(
    src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Remove speckles: a visible pixel with too few opaque neighbors in its
    artifact_neighborhood window (fewer than 6 of 24 for 5x5) is cleared
    unless it is itself fairly opaque.
    """
    out = _prepare_out(src, out)
    n = config.artifact_neighborhood
    inner = _interior(src.shape, n // 2)
    if not inner.any():
        return out

    counts = _neighbor_counts(src > ARTIFACT_OPAQUE_ALPHA, n)
    min_count = math.ceil(ARTIFACT_MIN_NEIGHBOR_FRACTION * (n * n - 1))
    drop = inner & (src > 0.0) & (counts < min_count) & (src < ARTIFACT_KEEP_ALPHA)
    out[drop] = 0.0
    return out


def sharpen_edges(src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Soft-band pixels (0.1 < a < 0.9) on a steep gradient snap to 0/1; the rest
    go through a logistic curve centered at 0.5.
    """
    out = _prepare_out(src, out)
    inner = _interior(src.shape, 1)
    if not inner.any():
        return out

    gx = np.zeros_like(src, dtype=np.float32)
    gy = np.zeros_like(src, dtype=np.float32)
    gx[1:-1, 1:-1] = src[1:-1, 2:] - src[1:-1, :-2]
    gy[1:-1, 1:-1] = src[2:, 1:-1] - src[:-2, 1:-1]
    magnitude = np.hypot(gx, gy)

    band = inner & (src > EDGE_BAND_LOW) & (src < EDGE_BAND_HIGH)
    hard = band & (magnitude > config.edge_gradient_threshold)
    soft = band & ~hard

    out[hard] = np.where(src[hard] >= EDGE_SNAP_CUTOFF, 1.0, 0.0)
    out[soft] = 1.0 / (1.0 + np.exp(-SIGMOID_STEEPNESS * (src[soft] - EDGE_SNAP_CUTOFF)))
    return out


def fill_holes(src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Fill near-transparent pixels enclosed by opaque ones: the opaque-neighbor
    fraction must strictly exceed hole_fill_threshold.
    """
    out = _prepare_out(src, out)
    n = config.artifact_neighborhood
    inner = _interior(src.shape, n // 2)
    if not inner.any():
        return out

    counts = _neighbor_counts(src > HOLE_SUPPORT_ALPHA, n)
    fraction = counts.astype(np.float64) / float(n * n - 1)
    fill = inner & (src < HOLE_CANDIDATE_ALPHA) & (fraction > config.hole_fill_threshold)
    out[fill] = 1.0
    return out


def disk_kernel(radius: int) -> np.ndarray:
    """Normalized averaging kernel over offsets with dx^2 + dy^2 <= r^2."""
    r = int(radius)
    yy, xx = np.mgrid[-r : r + 1, -r : r + 1]
    k = (xx * xx + yy * yy <= r * r).astype(np.float32)
    return k / k.sum()


def disk_blur(src: np.ndarray, radius: int) -> np.ndarray:
    """
    Two successive local averages over a disk of `radius` (replicated borders),
    approximating a Gaussian. Support stays within 2 * radius in every direction.
    """
    k = disk_kernel(radius)
    once = cv2.filter2D(src, -1, k, borderType=cv2.BORDER_REPLICATE)
    return cv2.filter2D(once, -1, k, borderType=cv2.BORDER_REPLICATE)


def feather(src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Smooth the boundary: solid interior (> 0.9) is kept exactly, near-background
    (< 0.1) becomes 0.3 * blurred, everything else takes the blurred value.
    """
    out = _prepare_out(src, out)
    if config.feather_radius <= 0:
        return out

    blurred = disk_blur(src, config.feather_radius)
    damp = src < FEATHER_DAMP_BELOW
    mid = ~damp & (src <= FEATHER_KEEP_ABOVE)
    out[damp] = FEATHER_DAMP_FACTOR * blurred[damp]
    out[mid] = blurred[mid]
    np.clip(out, 0.0, 1.0, out=out)
    return out


def fast_clamp(src: np.ndarray, config: RefinementConfig = QUALITY, out: Optional[np.ndarray] = None) -> np.ndarray:
    """Lightweight clamp for constrained devices: < 0.1 -> 0, > 0.9 -> 1."""
    return _threshold(src, EDGE_BAND_LOW, EDGE_BAND_HIGH, out)


PassFn = Callable[[np.ndarray, RefinementConfig, Optional[np.ndarray]], np.ndarray]

QUALITY_PASSES: Sequence[Tuple[str, PassFn]] = (
    ("hard-clip", hard_clip),
    ("artifact-removal", suppress_isolated_pixels),
    ("edge-sharpening", sharpen_edges),
    ("hole-filling", fill_holes),
    ("feathering", feather),
)
FAST_PASSES: Sequence[Tuple[str, PassFn]] = (("fast-clamp", fast_clamp),)


class MaskRefiner:
    """
    Runs the ordered refinement passes selected by a RefinementConfig.

    Passes ping-pong between two scratch buffers borrowed from `pool`; each pass
    sees the complete output of the previous one. The input array is never
    modified and the returned array is owned by the caller.
    """

    def __init__(self, config: RefinementConfig = QUALITY, pool: Optional[BufferPool] = None):
        self.config = config
        self.pool = pool if pool is not None else BufferPool(max_free=0)

    def _passes(self) -> Sequence[Tuple[str, PassFn]]:
        return FAST_PASSES if self.config.is_fast else QUALITY_PASSES

    def passes(self) -> List[str]:
        return [name for name, _ in self._passes()]

    def refine(self, values: np.ndarray, on_pass: Optional[Callable[[str], None]] = None) -> np.ndarray:
        if values.ndim != 2:
            raise ValueError(f"Expected 2D mask values, got shape={values.shape}")

        with ExitStack() as stack:
            cur = stack.enter_context(self.pool.borrow(values.shape, np.float32))
            nxt = stack.enter_context(self.pool.borrow(values.shape, np.float32))
            np.copyto(cur, np.nan_to_num(values, nan=0.0, posinf=1.0, neginf=0.0), casting="unsafe")
            np.clip(cur, 0.0, 1.0, out=cur)

            for name, fn in self._passes():
                if on_pass is not None:
                    on_pass(name)
                fn(cur, self.config, nxt)
                cur, nxt = nxt, cur
            return cur.copy()
