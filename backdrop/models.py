"""Value objects passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class PipelineStage(str, Enum):
    VALIDATING = "validating"
    RESIZING = "resizing"
    MATTING = "matting"
    STYLING_BACKGROUND = "styling_background"
    COMPOSITING = "compositing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RawImage:
    """An encoded image buffer together with its declared MIME type."""

    data: bytes
    mime_type: str = "image/png"
    filename: Optional[str] = None

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class ImageMetadata:
    width: int
    height: int
    format: Optional[str]


@dataclass(frozen=True, slots=True)
class CompositeResult:
    """The four encoded artifacts of a successful run."""

    original: str
    no_background: str
    blurred_background: str
    combined: str
    width: int
    height: int

    def to_dict(self) -> dict:
        return {
            "original": self.original,
            "noBackground": self.no_background,
            "blurredBackground": self.blurred_background,
            "combined": self.combined,
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True, slots=True)
class PipelineFailure:
    kind: str
    message: str
    stage: str
    upstream_status: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "stage": self.stage,
            "upstream_status": self.upstream_status,
            "reason": self.reason,
        }


@dataclass(slots=True)
class PipelineResult:
    """Outcome of a single run: either a full result or a single failure."""

    status: str
    result: Optional[CompositeResult] = None
    error: Optional[PipelineFailure] = None
    stages: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error.to_dict() if self.error else None,
            "stages": list(self.stages),
        }
