"""Custom exceptions for the backdrop pipeline."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline related errors."""

    kind = "internal"

    def __init__(self, message: str, upstream_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.upstream_status = upstream_status


class ValidationError(PipelineError):
    """Raised when the uploaded input is missing, too large or of the wrong type."""

    kind = "validation"


class CodecError(PipelineError):
    """Raised when an image buffer cannot be decoded, transformed or encoded."""

    kind = "codec"


class InvalidDimensions(PipelineError):
    """Raised when source dimensions are not usable for planning."""

    kind = "invalid_dimensions"


class GeometryMismatchError(PipelineError):
    """Raised when two buffers that must share a size do not."""

    kind = "geometry_mismatch"


class MatteServiceError(PipelineError):
    """Raised when background removal fails."""

    kind = "matte_service"

    def __init__(
        self,
        message: str,
        reason: str = "upstream_error",
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(message, upstream_status=upstream_status)
        self.reason = reason


class PipelineTimeoutError(PipelineError):
    """Raised when a run exceeds its wall-clock budget."""

    kind = "timeout"


class PipelineCancelledError(PipelineError):
    """Raised when a run is cancelled before it completes."""

    kind = "cancelled"
