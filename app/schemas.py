from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ProcessedImageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original: str
    no_background: str = Field(alias="noBackground")
    blurred_background: str = Field(alias="blurredBackground")
    combined: str
    width: int
    height: int


class ErrorResponse(BaseModel):
    error: str
    kind: str
    stage: Optional[str] = None
    upstream_status: Optional[int] = None
    reason: Optional[str] = None
