"""Subject cutout: refine a segmentation mask into an alpha-matted PNG."""

from .contracts import FAST, QUALITY, RefinementConfig
from .errors import PipelineError
from .pipeline import PipelineOrchestrator, remove_background

__all__ = ["FAST", "QUALITY", "PipelineError", "PipelineOrchestrator", "RefinementConfig", "remove_background"]
