from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import (
    ARTIFACT_NEIGHBORHOOD,
    EDGE_GRADIENT_THRESHOLD,
    FEATHER_RADIUS,
    HIGH_CUT,
    HOLE_FILL_THRESHOLD,
    LOW_CUT,
)


class RefinementConfig(BaseModel):
    """
    Immutable per-run refinement parameters.

    `variant` selects the pass list: "quality" runs the full refinement chain,
    "fast" only the lightweight clamp.
    """

    model_config = ConfigDict(frozen=True)

    variant: Literal["quality", "fast"] = "quality"
    feather_radius: int = Field(default=FEATHER_RADIUS, ge=0)
    artifact_neighborhood: int = Field(default=ARTIFACT_NEIGHBORHOOD, ge=3)
    hole_fill_threshold: float = Field(default=HOLE_FILL_THRESHOLD, ge=0.0, le=1.0)
    edge_gradient_threshold: float = Field(default=EDGE_GRADIENT_THRESHOLD, ge=0.0)
    low_cut: float = Field(default=LOW_CUT, ge=0.0, le=1.0)
    high_cut: float = Field(default=HIGH_CUT, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_ranges(self) -> "RefinementConfig":
        if self.artifact_neighborhood % 2 == 0:
            raise ValueError(f"artifact_neighborhood must be odd, got {self.artifact_neighborhood}")
        if self.low_cut >= self.high_cut:
            raise ValueError(f"low_cut ({self.low_cut}) must be below high_cut ({self.high_cut})")
        return self

    @property
    def is_fast(self) -> bool:
        return self.variant == "fast"


QUALITY = RefinementConfig(variant="quality")
FAST = RefinementConfig(variant="fast", feather_radius=0)
