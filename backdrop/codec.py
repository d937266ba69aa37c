"""Pillow backed image codec used by every pipeline stage."""

from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import Optional

from PIL import Image, ImageChops, ImageEnhance, ImageFilter
from pillow_heif import register_heif_opener

from .dimensions import Dimensions, fit_inside
from .exceptions import CodecError
from .models import ImageMetadata, RawImage
from .utils import ensure_rgba

logger = logging.getLogger(__name__)

register_heif_opener()

RESIZE_MODES = {"inside", "contain", "fill"}
BLEND_MODES = {"over", "multiply", "screen"}

_FORMAT_MIME_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
}


class ImageCodec:
    """Buffer-in/buffer-out image operations.

    Every method decodes its input, works on a Pillow image and encodes a new
    :class:`RawImage`; inputs are never mutated. Decoding or encoding problems
    surface as :class:`CodecError`.
    """

    def __init__(self, jpeg_quality: int = 90, resample: Image.Resampling = Image.Resampling.LANCZOS):
        self.jpeg_quality = jpeg_quality
        self.resample = resample

    # ------------------------------------------------------------------
    # Decoding / encoding
    # ------------------------------------------------------------------

    def decode_metadata(self, image: RawImage) -> ImageMetadata:
        try:
            with Image.open(io.BytesIO(image.data)) as decoded:
                return ImageMetadata(width=decoded.width, height=decoded.height, format=decoded.format)
        except Exception as exc:
            raise CodecError(f"Unable to read image metadata: {exc}") from exc

    def normalize_heif(self, image: RawImage) -> RawImage:
        """Convert a HEIF/HEIC container into a JPEG buffer."""

        try:
            with Image.open(io.BytesIO(image.data)) as decoded:
                converted = self._encode(decoded, "JPEG")
        except CodecError:
            raise
        except Exception as exc:
            raise CodecError(f"HEIF/HEIC conversion failed: {exc}") from exc
        logger.debug("Normalized HEIF upload %s (%d bytes)", image.filename, image.length)
        return RawImage(converted.data, converted.mime_type, image.filename)

    def convert(self, image: RawImage, fmt: str = "PNG") -> RawImage:
        with self._open(image) as decoded:
            return self._encode(decoded, fmt)

    @staticmethod
    def encode_data_uri(image: RawImage, mime_type: Optional[str] = None) -> str:
        payload = base64.b64encode(image.data).decode("ascii")
        return f"data:{mime_type or image.mime_type};base64,{payload}"

    @staticmethod
    def decode_data_uri(uri: str) -> RawImage:
        header, sep, payload = uri.partition(",")
        if not sep or not header.startswith("data:") or not header.endswith(";base64"):
            raise CodecError("Malformed data URI")
        mime_type = header[len("data:"):-len(";base64")] or "application/octet-stream"
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CodecError("Malformed base64 payload in data URI") from exc
        return RawImage(data, mime_type)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def resize(self, image: RawImage, width: int, height: int, mode: str = "inside") -> RawImage:
        """Resize ``image`` against a ``width`` x ``height`` box.

        ``inside`` shrinks to fit without padding and never enlarges.
        ``contain`` scales to fit and centers the result on a transparent
        canvas of exactly the box size. ``fill`` stretches to the box.
        """

        if mode not in RESIZE_MODES:
            raise CodecError(f"Unsupported resize mode '{mode}'")
        if width <= 0 or height <= 0:
            raise CodecError(f"Resize target must be positive, got {width}x{height}")

        if mode == "contain":
            with self._open(image) as decoded:
                return self._encode(self._contain(ensure_rgba(decoded), width, height), "PNG")

        metadata = self.decode_metadata(image)
        if mode == "fill":
            target = Dimensions(width, height)
        else:
            target = fit_inside(metadata.width, metadata.height, width, height)

        with self._open(image, draft_size=target.as_tuple()) as decoded:
            if decoded.size == target.as_tuple():
                output = ensure_rgba(decoded)
            else:
                output = self._shrink(decoded, target)
            return self._encode(output, "PNG")

    def _shrink(self, decoded: Image.Image, target: Dimensions) -> Image.Image:
        # Resample in the decoded mode so the RGBA copy is only made at the target size.
        if decoded.mode in {"RGB", "RGBA", "L"}:
            return ensure_rgba(decoded.resize(target.as_tuple(), self.resample))
        return ensure_rgba(decoded).resize(target.as_tuple(), self.resample)

    def _contain(self, source: Image.Image, width: int, height: int) -> Image.Image:
        # Scale factor may be above one here, so fit_inside is not reused.
        scale = min(width / source.width, height / source.height)
        scaled = Dimensions(
            min(width, max(1, round(source.width * scale))),
            min(height, max(1, round(source.height * scale))),
        )
        if scaled.as_tuple() != source.size:
            source = source.resize(scaled.as_tuple(), self.resample)
        canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        offset = ((width - scaled.width) // 2, (height - scaled.height) // 2)
        canvas.paste(source, offset)
        return canvas

    # ------------------------------------------------------------------
    # Tone
    # ------------------------------------------------------------------

    def blur(self, image: RawImage, radius: float) -> RawImage:
        if radius < 0:
            raise CodecError(f"Blur radius must not be negative, got {radius}")
        with self._open(image) as decoded:
            output = ensure_rgba(decoded).filter(ImageFilter.GaussianBlur(radius=radius))
            return self._encode(output, "PNG")

    def modulate(self, image: RawImage, brightness: float = 1.0, saturation: float = 1.0) -> RawImage:
        if brightness < 0 or saturation < 0:
            raise CodecError("Brightness and saturation multipliers must not be negative")
        with self._open(image) as decoded:
            source = ensure_rgba(decoded)
            alpha = source.getchannel("A")
            rgb = source.convert("RGB")
            rgb = ImageEnhance.Brightness(rgb).enhance(brightness)
            rgb = ImageEnhance.Color(rgb).enhance(saturation)
            output = rgb.convert("RGBA")
            output.putalpha(alpha)
            return self._encode(output, "PNG")

    def gamma(self, image: RawImage, value: float) -> RawImage:
        if value <= 0:
            raise CodecError(f"Gamma must be positive, got {value}")
        exponent = 1.0 / value
        table = [round(255 * ((level / 255) ** exponent)) for level in range(256)]
        with self._open(image) as decoded:
            source = ensure_rgba(decoded)
            red, green, blue, alpha = source.split()
            channels = [channel.point(table) for channel in (red, green, blue)]
            output = Image.merge("RGBA", (*channels, alpha))
            return self._encode(output, "PNG")

    # ------------------------------------------------------------------
    # Alpha
    # ------------------------------------------------------------------

    def composite_over(self, background: RawImage, foreground: RawImage, blend_mode: str = "over") -> RawImage:
        """Alpha-blend ``foreground`` onto ``background``.

        Both buffers must share the same pixel size; mismatches are rejected
        rather than cropped.
        """

        if blend_mode not in BLEND_MODES:
            raise CodecError(f"Unsupported blend mode '{blend_mode}'")
        with self._open(background) as bg_decoded, self._open(foreground) as fg_decoded:
            bg = ensure_rgba(bg_decoded)
            fg = ensure_rgba(fg_decoded)
            if bg.size != fg.size:
                raise CodecError(
                    f"Cannot composite {fg.width}x{fg.height} onto {bg.width}x{bg.height}"
                )
            if blend_mode == "over":
                output = Image.alpha_composite(bg, fg)
            else:
                blend = ImageChops.multiply if blend_mode == "multiply" else ImageChops.screen
                mixed = blend(bg.convert("RGB"), fg.convert("RGB")).convert("RGBA")
                mixed.putalpha(bg.getchannel("A"))
                output = Image.composite(mixed, bg, fg.getchannel("A"))
            return self._encode(output, "PNG")

    def threshold_mask(self, image: RawImage, threshold: int = 200) -> RawImage:
        """Greyscale mask: bright pixels (>= threshold) are background."""

        if not 0 <= threshold <= 255:
            raise CodecError(f"Threshold must be within 0..255, got {threshold}")
        with self._open(image) as decoded:
            mask = decoded.convert("L").point(lambda level: 0 if level >= threshold else 255)
            return self._encode(mask, "PNG")

    def apply_alpha_mask(self, image: RawImage, mask: RawImage) -> RawImage:
        with self._open(image) as decoded, self._open(mask) as mask_decoded:
            source = ensure_rgba(decoded).copy()
            alpha = mask_decoded.convert("L")
            if alpha.size != source.size:
                raise CodecError(
                    f"Mask size {alpha.width}x{alpha.height} does not match image "
                    f"{source.width}x{source.height}"
                )
            source.putalpha(alpha)
            return self._encode(source, "PNG")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open(image: RawImage, draft_size: Optional[tuple[int, int]] = None) -> Image.Image:
        if not image.data:
            raise CodecError("Empty image buffer")
        try:
            decoded = Image.open(io.BytesIO(image.data))
            if draft_size is not None and decoded.format == "JPEG":
                # DCT scaling; the draft is never smaller than draft_size.
                decoded.draft(decoded.mode, draft_size)
            decoded.load()
        except Exception as exc:
            raise CodecError(f"Unable to decode image: {exc}") from exc
        return decoded

    def _encode(self, image: Image.Image, fmt: str) -> RawImage:
        fmt = fmt.upper()
        if fmt == "JPG":
            fmt = "JPEG"
        mime_type = _FORMAT_MIME_TYPES.get(fmt)
        if mime_type is None:
            raise CodecError(f"Unsupported output format '{fmt}'")

        buffer = io.BytesIO()
        try:
            if fmt == "JPEG":
                self._flatten(image).save(buffer, format="JPEG", quality=self.jpeg_quality)
            else:
                image.save(buffer, format=fmt)
        except (OSError, ValueError) as exc:
            raise CodecError(f"Unable to encode {fmt}: {exc}") from exc
        return RawImage(buffer.getvalue(), mime_type)

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        if image.mode in {"RGBA", "LA"} or (image.mode == "P" and "transparency" in image.info):
            rgba = ensure_rgba(image)
            flattened = Image.new("RGB", rgba.size, (255, 255, 255))
            flattened.paste(rgba, mask=rgba.getchannel("A"))
            return flattened
        return image.convert("RGB")
