"""Public API for the backdrop package."""

from .codec import ImageCodec
from .dimensions import Dimensions, fit_inside, plan_dimensions
from .exceptions import (
    CodecError,
    GeometryMismatchError,
    InvalidDimensions,
    MatteServiceError,
    PipelineCancelledError,
    PipelineError,
    PipelineTimeoutError,
    ValidationError,
)
from .matte import MatteClient, RembgMatteClient, RemoveBgClient, RetryPolicy, ThresholdMatteClient
from .models import CompositeResult, ImageMetadata, PipelineFailure, PipelineResult, PipelineStage, RawImage
from .pipeline import PipelineConfig, PipelineOrchestrator
from . import utils

__all__ = [
    "CodecError",
    "CompositeResult",
    "Dimensions",
    "GeometryMismatchError",
    "ImageCodec",
    "ImageMetadata",
    "InvalidDimensions",
    "MatteClient",
    "MatteServiceError",
    "PipelineCancelledError",
    "PipelineConfig",
    "PipelineError",
    "PipelineFailure",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineStage",
    "PipelineTimeoutError",
    "RawImage",
    "RembgMatteClient",
    "RemoveBgClient",
    "RetryPolicy",
    "ThresholdMatteClient",
    "ValidationError",
    "fit_inside",
    "plan_dimensions",
    "utils",
]
