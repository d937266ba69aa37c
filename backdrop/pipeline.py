"""Pipeline orchestration: validate, resize, matte, style, composite, encode."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .codec import ImageCodec
from .dimensions import Dimensions, plan_dimensions
from .exceptions import (
    CodecError,
    GeometryMismatchError,
    InvalidDimensions,
    PipelineCancelledError,
    PipelineError,
    PipelineTimeoutError,
    ValidationError,
)
from .matte import MatteClient
from .models import CompositeResult, PipelineFailure, PipelineResult, PipelineStage, RawImage
from .utils import is_heif, validate_upload_type

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for a :class:`PipelineOrchestrator`."""

    max_upload_bytes: int = 10 * MIB
    max_dimension: int = 800
    default_blur: float = 20.0
    blur_scale: float = 1.0
    min_blur: float = 0.3
    max_blur: float = 100.0
    brightness: float = 0.7
    saturation: float = 1.3
    gamma: Optional[float] = None
    backdrop_format: str = "PNG"
    fallback_dimension: int = 800
    strict_metadata: bool = False
    timeout_seconds: Optional[float] = 60.0

    def __post_init__(self) -> None:
        if self.max_upload_bytes <= 0:
            raise ValueError("max_upload_bytes must be positive")
        if self.max_dimension <= 0 or self.fallback_dimension <= 0:
            raise ValueError("max_dimension and fallback_dimension must be positive")
        if not 0 < self.min_blur <= self.max_blur:
            raise ValueError("min_blur must be positive and not above max_blur")
        if self.backdrop_format.upper() not in {"PNG", "JPEG"}:
            raise ValueError("backdrop_format must be PNG or JPEG")

    def effective_blur(self, blur_amount: Optional[float]) -> float:
        """Scale and clamp a caller supplied blur amount into a usable radius."""

        amount = self.default_blur if blur_amount is None else float(blur_amount)
        if amount != amount:  # NaN
            amount = self.default_blur
        return min(self.max_blur, max(self.min_blur, amount * self.blur_scale))


class _Run:
    """Per-request bookkeeping: current stage, deadline, cancellation."""

    def __init__(
        self,
        clock: Callable[[], float],
        timeout: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> None:
        self._clock = clock
        self._deadline = clock() + timeout if timeout else None
        self._timeout = timeout
        self.cancel_event = cancel_event
        self.stage = PipelineStage.VALIDATING
        self.stages: List[str] = []

    def enter(self, stage: PipelineStage) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise PipelineCancelledError(f"Processing cancelled before {stage.value}")
        if self._deadline is not None and self._clock() > self._deadline:
            raise PipelineTimeoutError(f"Processing exceeded {self._timeout:g}s before {stage.value}")
        self.stage = stage
        self.stages.append(stage.value)
        logger.debug("Pipeline stage: %s", stage.value)


class PipelineOrchestrator:
    """Runs the fixed resize, matte, blur and composite pipeline over one image."""

    def __init__(
        self,
        config: PipelineConfig,
        matte_client: MatteClient,
        codec: ImageCodec | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.matte_client = matte_client
        self.codec = codec or ImageCodec()
        self._clock = clock

    def process_image(
        self,
        data: bytes,
        mime_type: Optional[str],
        filename: Optional[str],
        blur_amount: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineResult:
        """Process one upload; failures are reported in the result, never raised."""

        run = _Run(self._clock, self.config.timeout_seconds, cancel_event)
        try:
            result = self._run(run, data, mime_type, filename, blur_amount)
        except PipelineError as exc:
            logger.warning("Pipeline failed during %s: %s", run.stage.value, exc.message)
            return self._failed(run, exc.kind, exc.message, exc.upstream_status, getattr(exc, "reason", None))
        except Exception as exc:  # pragma: no cover - unexpected guard
            logger.exception("Unexpected pipeline error during %s", run.stage.value)
            return self._failed(run, "internal", f"Unexpected processing error: {exc}")

        run.stages.append(PipelineStage.DONE.value)
        return PipelineResult(status="completed", result=result, stages=run.stages)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run(
        self,
        run: _Run,
        data: bytes,
        mime_type: Optional[str],
        filename: Optional[str],
        blur_amount: Optional[float],
    ) -> CompositeResult:
        run.enter(PipelineStage.VALIDATING)
        source = self.validate(data, mime_type, filename)

        run.enter(PipelineStage.RESIZING)
        target = self.plan(source)
        original = self.codec.resize(source, target.width, target.height, "inside")
        canvas = self.codec.decode_metadata(original)

        run.enter(PipelineStage.MATTING)
        matte = self.matte_client.remove_background(original, cancel_event=run.cancel_event)

        run.enter(PipelineStage.STYLING_BACKGROUND)
        backdrop = self.style_background(original, blur_amount)

        run.enter(PipelineStage.COMPOSITING)
        foreground = self.codec.resize(matte, canvas.width, canvas.height, "contain")
        self._check_geometry(backdrop, foreground)
        combined = self.codec.composite_over(backdrop, foreground, "over")

        run.enter(PipelineStage.ENCODING)
        if self.config.backdrop_format.upper() == "JPEG":
            backdrop = self.codec.convert(backdrop, "JPEG")
        return CompositeResult(
            original=self.codec.encode_data_uri(original),
            no_background=self.codec.encode_data_uri(foreground),
            blurred_background=self.codec.encode_data_uri(backdrop),
            combined=self.codec.encode_data_uri(combined),
            width=canvas.width,
            height=canvas.height,
        )

    def validate(self, data: bytes, mime_type: Optional[str], filename: Optional[str]) -> RawImage:
        if not data:
            raise ValidationError("no image file provided")
        if len(data) > self.config.max_upload_bytes:
            limit_mib = self.config.max_upload_bytes / MIB
            raise ValidationError(f"file too large (max {limit_mib:g}MB)")
        validate_upload_type(mime_type, filename)

        upload = RawImage(data, mime_type or "application/octet-stream", filename)
        if is_heif(mime_type, filename):
            return self.codec.normalize_heif(upload)
        return upload

    def plan(self, source: RawImage) -> Dimensions:
        """Target size for ``source``, or a square fallback when its header is unreadable.

        The fallback only keeps planning from aborting. A buffer whose header
        cannot be read will normally fail to decode in the following
        ``resize`` as well, so the run still ends with a :class:`CodecError`.
        """

        try:
            metadata = self.codec.decode_metadata(source)
            return plan_dimensions(metadata.width, metadata.height, self.config.max_dimension)
        except (CodecError, InvalidDimensions) as exc:
            if self.config.strict_metadata:
                raise CodecError(f"Unable to read image dimensions: {exc.message}") from exc
            fallback = self.config.fallback_dimension
            logger.warning("Could not read image dimensions (%s); using %dx%d", exc.message, fallback, fallback)
            return Dimensions(fallback, fallback)

    def style_background(self, original: RawImage, blur_amount: Optional[float]) -> RawImage:
        radius = self.config.effective_blur(blur_amount)
        backdrop = self.codec.blur(original, radius)
        backdrop = self.codec.modulate(backdrop, self.config.brightness, self.config.saturation)
        if self.config.gamma is not None:
            backdrop = self.codec.gamma(backdrop, self.config.gamma)
        return backdrop

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_geometry(self, backdrop: RawImage, foreground: RawImage) -> None:
        bg = self.codec.decode_metadata(backdrop)
        fg = self.codec.decode_metadata(foreground)
        if (bg.width, bg.height) != (fg.width, fg.height):
            raise GeometryMismatchError(
                f"Backdrop is {bg.width}x{bg.height} but matte is {fg.width}x{fg.height}"
            )

    @staticmethod
    def _failed(
        run: _Run,
        kind: str,
        message: str,
        upstream_status: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> PipelineResult:
        failure = PipelineFailure(
            kind=kind,
            message=message,
            stage=run.stage.value,
            upstream_status=upstream_status,
            reason=reason,
        )
        run.stages.append(PipelineStage.FAILED.value)
        return PipelineResult(status="failed", error=failure, stages=run.stages)
