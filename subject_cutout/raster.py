from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from PIL import Image


@dataclass
class RasterBuffer:
    """
    Canonical in-memory image: RGBA8 pixels of shape (height, width, 4).

    A buffer is owned by whichever stage currently holds it; stages that need to
    modify pixels work on `copy()`.
    """

    width: int
    height: int
    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid raster size: {(self.width, self.height)}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")
        if self.pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"Expected pixels of shape {(self.height, self.width, 4)}, got {self.pixels.shape}"
            )

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RasterBuffer":
        """
        Build a buffer from an (H, W, 3) RGB or (H, W, 4) RGBA uint8 array (always copies).
        """
        if arr.ndim != 3 or arr.shape[2] not in (3, 4):
            raise ValueError(f"Expected RGB or RGBA image (H,W,3|4), got shape={arr.shape}")
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        h, w = arr.shape[:2]
        if arr.shape[2] == 3:
            rgba = np.empty((h, w, 4), dtype=np.uint8)
            rgba[..., :3] = arr
            rgba[..., 3] = 255
        else:
            rgba = np.array(arr, dtype=np.uint8, copy=True)
        return cls(width=w, height=h, pixels=rgba)

    @classmethod
    def from_pil(cls, img: Image.Image) -> "RasterBuffer":
        rgba = np.array(img.convert("RGBA"), dtype=np.uint8)
        return cls.from_array(rgba)

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def copy(self) -> "RasterBuffer":
        return RasterBuffer(width=self.width, height=self.height, pixels=self.pixels.copy())

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]


@dataclass
class Mask:
    """Foreground probability map: float32 values of shape (height, width)."""

    width: int
    height: int
    values: np.ndarray

    def __post_init__(self) -> None:
        if self.values.ndim != 2:
            raise ValueError(f"Expected 2D mask, got shape={self.values.shape}")
        if self.values.shape != (self.height, self.width):
            raise ValueError(f"Expected mask of shape {(self.height, self.width)}, got {self.values.shape}")
        if self.values.dtype != np.float32:
            self.values = self.values.astype(np.float32)

    @classmethod
    def from_array(cls, values: np.ndarray) -> "Mask":
        values = np.asarray(values, dtype=np.float32)
        if values.ndim != 2:
            raise ValueError(f"Expected 2D mask, got shape={values.shape}")
        h, w = values.shape
        return cls(width=w, height=h, values=values)

    @classmethod
    def filled(cls, width: int, height: int, value: float) -> "Mask":
        return cls(width=width, height=height, values=np.full((height, width), value, dtype=np.float32))

    def clamped(self) -> "Mask":
        """Copy with values clipped to [0, 1] (NaNs become 0)."""
        v = np.nan_to_num(self.values, nan=0.0, posinf=1.0, neginf=0.0)
        return Mask(width=self.width, height=self.height, values=np.clip(v, 0.0, 1.0).astype(np.float32))

    @property
    def is_empty(self) -> bool:
        return self.values.size == 0
