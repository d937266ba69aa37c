"""Utility helpers for the backdrop pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from PIL import Image

from .exceptions import ValidationError

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tif", ".tiff", ".heic", ".heif"}
HEIF_EXTENSIONS = {".heic", ".heif"}
HEIF_MIME_TYPES = {"image/heif", "image/heic", "image/heif-sequence", "image/heic-sequence"}


def file_extension(filename: Optional[str]) -> str:
    """Return the lowercase extension of ``filename`` including the dot, or ``""``."""

    if not filename:
        return ""
    return Path(filename).suffix.lower()


def is_heif(mime_type: Optional[str], filename: Optional[str]) -> bool:
    """Whether the upload is a HEIF/HEIC container that needs normalizing."""

    return (mime_type or "").lower() in HEIF_MIME_TYPES or file_extension(filename) in HEIF_EXTENSIONS


def validate_upload_type(
    mime_type: Optional[str],
    filename: Optional[str],
    allowed_extensions: Iterable[str] | None = None,
) -> None:
    """Validate that an upload declares an image MIME type or a known image extension.

    Raises
    ------
    ValidationError
        If neither the MIME type nor the file extension is accepted.
    """

    if (mime_type or "").lower().startswith("image/"):
        return

    extensions = {ext.lower() for ext in (allowed_extensions or ALLOWED_EXTENSIONS)}
    suffix = file_extension(filename)
    if suffix not in extensions:
        allowed = ", ".join(sorted(extensions))
        raise ValidationError(
            f"unsupported file type '{mime_type or 'unknown'}' ({suffix or 'no extension'}). "
            f"Allowed extensions: {allowed}"
        )


def ensure_rgba(image: Image.Image) -> Image.Image:
    """Ensure that a Pillow image is in RGBA mode."""

    if image.mode == "RGBA":
        return image
    return image.convert("RGBA")
