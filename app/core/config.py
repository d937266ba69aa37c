from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from backdrop import PipelineConfig
from backdrop.matte import REMOVE_BG_URL

MIB = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_", env_file=".env", extra="ignore")

    app_name: str = "Background Blur Service"
    log_level: str = "INFO"

    # Matting backend
    matte_backend: Literal["remove_bg", "threshold", "rembg"] = "remove_bg"
    remove_bg_api_key: str = ""
    remove_bg_url: str = REMOVE_BG_URL
    remove_bg_size: str = "regular"
    remove_bg_type: str = "auto"
    retry_max_attempts: int = 3
    http_timeout_seconds: float = 30.0
    threshold_level: int = 200
    rembg_model_name: str = "u2net"

    # Pipeline tunables
    max_upload_bytes: int = 10 * MIB
    max_dimension: int = 800
    default_blur: float = 20.0
    blur_scale: float = 1.0
    min_blur: float = 0.3
    max_blur: float = 100.0
    brightness: float = 0.7
    saturation: float = 1.3
    gamma: Optional[float] = None
    backdrop_format: Literal["PNG", "JPEG"] = "PNG"
    strict_metadata: bool = False
    request_timeout_seconds: float = 60.0

    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_headers: List[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = False

    def to_pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            max_upload_bytes=self.max_upload_bytes,
            max_dimension=self.max_dimension,
            default_blur=self.default_blur,
            blur_scale=self.blur_scale,
            min_blur=self.min_blur,
            max_blur=self.max_blur,
            brightness=self.brightness,
            saturation=self.saturation,
            gamma=self.gamma,
            backdrop_format=self.backdrop_format,
            fallback_dimension=self.max_dimension,
            strict_metadata=self.strict_metadata,
            timeout_seconds=self.request_timeout_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
