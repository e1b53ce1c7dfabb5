from __future__ import annotations

import io
from dataclasses import dataclass

import numpy as np
from PIL import Image

from .errors import EncodeFailure
from .raster import RasterBuffer


@dataclass(frozen=True)
class PipelineResult:
    """Final cutout: the alpha-applied raster and its PNG encoding."""

    raster: RasterBuffer
    encoded: bytes


def alpha_to_uint8(alpha: np.ndarray) -> np.ndarray:
    """round(a * 255) (half up) clamped to [0, 255]."""
    a = np.nan_to_num(alpha.astype(np.float32, copy=False), nan=0.0)
    return np.clip(np.floor(a * 255.0 + 0.5), 0, 255).astype(np.uint8)


def apply_alpha(raster: RasterBuffer, alpha: np.ndarray) -> RasterBuffer:
    """
    Copy RGB unchanged and overwrite the alpha channel from a float matte in [0,1].
    """
    if alpha.ndim != 2 or alpha.shape != (raster.height, raster.width):
        raise ValueError(f"Alpha shape {alpha.shape} does not match raster {(raster.height, raster.width)}")
    out = raster.copy()
    out.pixels[..., 3] = alpha_to_uint8(alpha)
    return out


def encode_png(raster: RasterBuffer) -> bytes:
    """
    Encode as lossless RGBA PNG.
    """
    buf = io.BytesIO()
    try:
        Image.fromarray(raster.pixels).save(buf, format="PNG", optimize=False)
    except (OSError, TypeError, ValueError) as e:
        raise EncodeFailure(f"PNG encoding failed: {e}") from e
    data = buf.getvalue()
    if not data:
        raise EncodeFailure("PNG encoding produced no output")
    return data


def compose(raster: RasterBuffer, alpha: np.ndarray) -> PipelineResult:
    cutout = apply_alpha(raster, alpha)
    return PipelineResult(raster=cutout, encoded=encode_png(cutout))
