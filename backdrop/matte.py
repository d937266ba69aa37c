"""Background removal clients."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import httpx
from PIL import Image

from .codec import ImageCodec
from .exceptions import MatteServiceError, PipelineCancelledError
from .models import RawImage
from .utils import ensure_rgba

logger = logging.getLogger(__name__)

REMOVE_BG_URL = "https://api.remove.bg/v1.0/removebg"


def exponential_backoff(attempt: int) -> float:
    """Delay in seconds after failed attempt number ``attempt`` (1-based)."""

    return float(2 ** attempt)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: Callable[[int], float] = exponential_backoff
    sleep: Optional[Callable[[float], None]] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def pause(self, delay: float, cancel_event: Optional[threading.Event] = None) -> None:
        """Wait ``delay`` seconds, returning early once ``cancel_event`` is set."""

        if self.sleep is not None:
            self.sleep(delay)
        elif cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)


class MatteClient(Protocol):
    def remove_background(self, image: RawImage, cancel_event: Optional[threading.Event] = None) -> RawImage:
        """Return a copy of ``image`` whose background is transparent."""


class RemoveBgClient:
    """Client for the remove.bg HTTP API.

    Rate limited responses (HTTP 429) and responses without an image payload
    are retried according to ``retry_policy``; every other failure is
    terminal and raised immediately.
    """

    def __init__(
        self,
        api_key: str,
        *,
        url: str = REMOVE_BG_URL,
        size: str = "regular",
        type_hint: str = "auto",
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.size = size
        self.type_hint = type_hint
        self.retry_policy = retry_policy or RetryPolicy()
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RemoveBgClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def remove_background(self, image: RawImage, cancel_event: Optional[threading.Event] = None) -> RawImage:
        if not self.api_key:
            raise MatteServiceError("Remove.bg API key not configured", reason="auth")

        form = {
            "image_file_b64": base64.b64encode(image.data).decode("ascii"),
            "size": self.size,
            "type": self.type_hint,
            "format": "png",
        }
        policy = self.retry_policy
        last_status: Optional[int] = None

        for attempt in range(1, policy.max_attempts + 1):
            _check_cancelled(cancel_event)
            response = self._post(form)
            last_status = response.status_code

            if response.status_code == 429:
                logger.warning("Remove.bg rate limit hit (attempt %d/%d)", attempt, policy.max_attempts)
                self._wait(attempt, cancel_event)
                continue

            if response.status_code >= 400:
                message = _error_message(response)
                logger.error("Remove.bg request failed with HTTP %d: %s", response.status_code, message)
                raise MatteServiceError(
                    f"Background removal failed: {message}",
                    reason=_reason_for_status(response.status_code),
                    upstream_status=response.status_code,
                )

            result = self._parse_result(response)
            if result:
                logger.debug("Background removal succeeded on attempt %d", attempt)
                return RawImage(result, "image/png", image.filename)

            logger.warning("Remove.bg returned no image data (attempt %d/%d)", attempt, policy.max_attempts)
            self._wait(attempt, cancel_event)

        raise MatteServiceError(
            "Failed to remove background after multiple attempts",
            reason="retries_exhausted",
            upstream_status=last_status,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _post(self, form: dict[str, str]) -> httpx.Response:
        try:
            return self._client.post(
                self.url,
                data=form,
                headers={"X-Api-Key": self.api_key, "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("Remove.bg request error: %s", exc)
            raise MatteServiceError(f"Background removal failed: {exc}", reason="network") from exc

    def _wait(self, attempt: int, cancel_event: Optional[threading.Event]) -> None:
        if attempt >= self.retry_policy.max_attempts:
            return
        delay = self.retry_policy.backoff(attempt)
        logger.info("Retrying background removal in %.1fs", delay)
        self.retry_policy.pause(delay, cancel_event)

    @staticmethod
    def _parse_result(response: httpx.Response) -> bytes:
        try:
            body = response.json()
        except ValueError as exc:
            raise MatteServiceError(
                "Background removal failed: malformed response",
                reason="malformed_response",
                upstream_status=response.status_code,
            ) from exc

        data = body.get("data") if isinstance(body, dict) else None
        encoded = data.get("result_b64") if isinstance(data, dict) else None
        if not encoded:
            return b""
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MatteServiceError(
                "Background removal failed: invalid image payload",
                reason="malformed_response",
                upstream_status=response.status_code,
            ) from exc


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelledError("Background removal cancelled")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase or "Failed to remove background"
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("title"):
            return str(errors[0]["title"])
        if body.get("message"):
            return str(body["message"])
    return response.reason_phrase or "Failed to remove background"


def _reason_for_status(status_code: int) -> str:
    if status_code in (401, 403):
        return "auth"
    if 400 <= status_code < 500:
        return "rejected"
    return "upstream_error"


class ThresholdMatteClient:
    """Local matte: pixels brighter than ``threshold`` become transparent."""

    def __init__(self, codec: ImageCodec | None = None, threshold: int = 200) -> None:
        self.codec = codec or ImageCodec()
        self.threshold = threshold

    def remove_background(self, image: RawImage, cancel_event: Optional[threading.Event] = None) -> RawImage:
        _check_cancelled(cancel_event)
        mask = self.codec.threshold_mask(image, self.threshold)
        return self.codec.apply_alpha_mask(image, mask)


class RembgMatteClient:
    """Local matte produced by a rembg model session."""

    def __init__(self, model_name: str = "u2net") -> None:
        from rembg import new_session, remove

        self._session = new_session(model_name)
        self._remove = remove

    def remove_background(self, image: RawImage, cancel_event: Optional[threading.Event] = None) -> RawImage:
        _check_cancelled(cancel_event)
        try:
            output = self._remove(image.data, session=self._session)
        except Exception as exc:
            raise MatteServiceError("Background removal failed", reason="local_model") from exc

        if isinstance(output, Image.Image):
            return _png_bytes(ensure_rgba(output), image.filename)
        if isinstance(output, (bytes, bytearray)):
            with Image.open(io.BytesIO(output)) as decoded:
                return _png_bytes(ensure_rgba(decoded), image.filename)

        raise MatteServiceError(
            "Background removal function returned unsupported data type",
            reason="local_model",
        )


def _png_bytes(image: Image.Image, filename: Optional[str]) -> RawImage:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return RawImage(buffer.getvalue(), "image/png", filename)
