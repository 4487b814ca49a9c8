"""Deterministic thumbnail rendering with Pillow."""

from __future__ import annotations

import io
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from imgpipe.core.errors import ImageDecodeError

_CONTENT_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


class Thumbnailer:
    """Scale and center-crop images to a fixed size.

    The same input bytes always produce the same output bytes: the resampling
    filter, color mode and encoder options are fixed.
    """

    def __init__(self, size: Tuple[int, int] = (100, 100), fmt: str = "JPEG", quality: int = 85) -> None:
        fmt = fmt.upper()
        if fmt not in _CONTENT_TYPES:
            raise ValueError(f"Unsupported thumbnail format: {fmt}")
        self.size = size
        self.format = fmt
        self.quality = quality

    @classmethod
    def from_settings(cls, settings) -> "Thumbnailer":
        return cls(
            size=(settings.thumbnail_width, settings.thumbnail_height),
            fmt=settings.thumbnail_format,
            quality=settings.thumbnail_quality,
        )

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self.format]

    def render(self, source: bytes) -> bytes:
        """Return encoded thumbnail bytes for ``source``."""

        try:
            with Image.open(io.BytesIO(source)) as image:
                image.load()
                image = ImageOps.exif_transpose(image)
                mode = "RGB" if self.format == "JPEG" else "RGBA"
                thumbnail = ImageOps.fit(image.convert(mode), self.size, method=Image.Resampling.LANCZOS)
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise ImageDecodeError(f"Unable to decode image: {exc}") from exc

        buffer = io.BytesIO()
        if self.format == "PNG":
            thumbnail.save(buffer, format=self.format)
        else:
            thumbnail.save(buffer, format=self.format, quality=self.quality)
        return buffer.getvalue()
