"""
Pipeline exception taxonomy.

Every per-image failure is surfaced to the caller as one of these types; the
caller decides whether to retry or keep the original image.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base exception for the cutout pipeline."""

    def __init__(self, message: str, stage: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "stage": self.stage,
            "details": self.details,
        }


class DecodeError(PipelineError):
    """Raised when the input image cannot be read."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="decode", **kwargs)


class ModelLoadFailure(PipelineError):
    """Raised when every model backend in the fallback chain failed to load."""

    def __init__(self, message: str, attempts: Optional[List[Dict[str, str]]] = None, **kwargs):
        super().__init__(message, stage="model-load", **kwargs)
        self.attempts = list(attempts or [])
        self.details["attempts"] = self.attempts


class SegmentationError(PipelineError):
    """Raised when the segmentation backend fails during inference."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="inference", **kwargs)


class NoSegmentationResult(SegmentationError):
    """The segmentation backend returned no candidates at all."""


class NoSubjectDetected(SegmentationError):
    """Candidates were returned but none carried a usable mask."""


class CanvasContextUnavailable(PipelineError):
    """Raised when a scratch buffer cannot be allocated."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="mask-processing", **kwargs)


class EncodeFailure(PipelineError):
    """Raised when the cutout cannot be encoded to PNG."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="encode", **kwargs)


class PipelineCancelled(PipelineError):
    """Raised at a stage boundary after cancellation was requested."""
