from __future__ import annotations

import logging
from typing import Optional

from app.core.config import Settings
from backdrop import (
    ImageCodec,
    MatteClient,
    PipelineOrchestrator,
    RembgMatteClient,
    RemoveBgClient,
    RetryPolicy,
    ThresholdMatteClient,
)

logger = logging.getLogger(__name__)

_pipeline: Optional[PipelineOrchestrator] = None


class ConfigurationError(RuntimeError):
    """Raised when the service cannot be configured from its settings."""


def build_matte_client(settings: Settings, codec: ImageCodec) -> MatteClient:
    if settings.matte_backend == "threshold":
        return ThresholdMatteClient(codec, threshold=settings.threshold_level)
    if settings.matte_backend == "rembg":
        return RembgMatteClient(model_name=settings.rembg_model_name)
    if not settings.remove_bg_api_key:
        raise ConfigurationError("Server configuration error: API key not found")
    return RemoveBgClient(
        settings.remove_bg_api_key,
        url=settings.remove_bg_url,
        size=settings.remove_bg_size,
        type_hint=settings.remove_bg_type,
        retry_policy=RetryPolicy(max_attempts=settings.retry_max_attempts),
        timeout=settings.http_timeout_seconds,
    )


def build_pipeline(settings: Settings) -> PipelineOrchestrator:
    codec = ImageCodec()
    matte_client = build_matte_client(settings, codec)
    logger.info("Using %s matte backend", settings.matte_backend)
    return PipelineOrchestrator(settings.to_pipeline_config(), matte_client, codec=codec)


def set_pipeline(pipeline: Optional[PipelineOrchestrator]) -> None:
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> PipelineOrchestrator:
    if _pipeline is None:
        raise ConfigurationError("Server configuration error: pipeline not initialized")
    return _pipeline
