from __future__ import annotations

import io
import os
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
import torch
from PIL import Image, UnidentifiedImageError

from .config import CONSTRAINED_BUDGET, FAST_BUDGET, IMAGENET_MEAN, IMAGENET_STD, QUALITY_BUDGET
from .errors import DecodeError
from .raster import RasterBuffer

ImageSource = Union[bytes, bytearray, str, os.PathLike, Image.Image, np.ndarray, RasterBuffer]

BUDGETS = {
    "quality": QUALITY_BUDGET,
    "fast": FAST_BUDGET,
    "constrained": CONSTRAINED_BUDGET,
}


def decode_image(source: ImageSource) -> RasterBuffer:
    """
    Decode any supported input into a fresh RGBA RasterBuffer.

    The returned buffer never shares memory with `source`.
    """
    if isinstance(source, RasterBuffer):
        return source.copy()
    if isinstance(source, np.ndarray):
        try:
            return RasterBuffer.from_array(source)
        except ValueError as e:
            raise DecodeError(str(e)) from e
    if isinstance(source, Image.Image):
        return _decode_pil(source)
    if isinstance(source, (bytes, bytearray)):
        if not source:
            raise DecodeError("Empty image payload")
        return _open_and_decode(io.BytesIO(bytes(source)), "<bytes>")
    if isinstance(source, (str, os.PathLike)):
        path = os.fspath(source)
        if not os.path.exists(path):
            raise DecodeError(f"Could not read image: {path}")
        return _open_and_decode(path, path)
    raise DecodeError(f"Unsupported image source: {type(source).__name__}")


def _open_and_decode(fp, name: str) -> RasterBuffer:
    try:
        with Image.open(fp) as img:
            img.load()
            return _decode_pil(img)
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise DecodeError(f"Could not decode image {name}: {e}") from e


def _decode_pil(img: Image.Image) -> RasterBuffer:
    if img.width <= 0 or img.height <= 0:
        raise DecodeError(f"Invalid image size: {img.size}")
    try:
        return RasterBuffer.from_pil(img)
    except (OSError, ValueError) as e:
        raise DecodeError(f"Could not convert image to RGBA: {e}") from e


def fit_within(width: int, height: int, budget: int) -> Tuple[int, int]:
    """
    Aspect-preserving target size with the longer edge bounded by `budget`.

    Images already within budget keep their size (never upscaled).
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {(width, height)}")
    if budget <= 0:
        raise ValueError(f"Invalid resolution budget: {budget}")
    if max(width, height) <= budget:
        return width, height
    scale = float(budget) / float(max(width, height))
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


@dataclass(frozen=True)
class ImageResizer:
    """Downscale to a resolution budget using the highest-quality Pillow filter."""

    budget: int = QUALITY_BUDGET

    @classmethod
    def for_preset(cls, preset: str) -> "ImageResizer":
        try:
            return cls(budget=BUDGETS[preset])
        except KeyError:
            raise ValueError(f"Unknown budget preset: {preset!r} (expected one of {sorted(BUDGETS)})") from None

    def resize(self, raster: RasterBuffer) -> RasterBuffer:
        new_w, new_h = fit_within(raster.width, raster.height, self.budget)
        if (new_w, new_h) == (raster.width, raster.height):
            return raster.copy()
        resized = raster.to_pil().resize((new_w, new_h), Image.Resampling.LANCZOS)
        return RasterBuffer.from_pil(resized)

    def __call__(self, source: ImageSource) -> RasterBuffer:
        return self.resize(decode_image(source))


def normalize(rgb: np.ndarray, size: int) -> torch.Tensor:
    """
    Resize an RGB uint8 image to (size, size) and normalize to a float32 NCHW tensor.
    """
    if rgb.ndim != 3 or rgb.shape[2] != 3:
        raise ValueError(f"Expected RGB image (H,W,3), got shape={rgb.shape}")
    img = Image.fromarray(np.ascontiguousarray(rgb))
    if img.size != (size, size):
        img = img.resize((size, size), Image.Resampling.BILINEAR)
    x = np.asarray(img, dtype=np.float32) / 255.0
    mean = np.array(IMAGENET_MEAN, dtype=np.float32).reshape(1, 1, 3)
    std = np.array(IMAGENET_STD, dtype=np.float32).reshape(1, 1, 3)
    x = (x - mean) / std
    x = np.transpose(x, (2, 0, 1))  # CHW
    return torch.from_numpy(np.ascontiguousarray(x)).unsqueeze(0).float()
