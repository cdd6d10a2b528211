"""Build message parts from user input before sending."""

from __future__ import annotations

import base64
import mimetypes
from pathlib import Path

from ..schemas.chat import ImagePart, TextPart

MAX_IMAGE_BYTES = 8 * 1024 * 1024
ALLOWED_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
# Older interpreters do not register .webp
_FALLBACK_TYPES = {".webp": "image/webp"}


class InvalidImageError(ValueError):
    """Raised when a selected image cannot be attached."""


def load_image_part(path: str | Path) -> ImagePart:
    """Read an image file into an inline part, enforcing type and size limits."""

    file_path = Path(path).expanduser()
    mime_type, _ = mimetypes.guess_type(file_path.name)
    mime_type = mime_type or _FALLBACK_TYPES.get(file_path.suffix.lower())
    if mime_type not in ALLOWED_IMAGE_TYPES:
        raise InvalidImageError(
            f"Unsupported image type for {file_path.name}; use JPEG, PNG, WEBP or GIF."
        )
    try:
        size = file_path.stat().st_size
    except OSError as exc:
        raise InvalidImageError(f"Cannot read {file_path}: {exc.strerror}") from exc
    if size > MAX_IMAGE_BYTES:
        raise InvalidImageError(
            f"{file_path.name} is larger than {MAX_IMAGE_BYTES // (1024 * 1024)} MB."
        )
    data = base64.b64encode(file_path.read_bytes()).decode("ascii")
    return ImagePart(mime_type=mime_type, data=data)


def build_parts(text: str, image: ImagePart | None = None) -> list[TextPart | ImagePart]:
    """Text first, then the optional image, skipping blank text."""

    parts: list[TextPart | ImagePart] = []
    if text.strip():
        parts.append(TextPart(text=text))
    if image is not None:
        parts.append(image)
    return parts


__all__ = [
    "ALLOWED_IMAGE_TYPES",
    "MAX_IMAGE_BYTES",
    "InvalidImageError",
    "build_parts",
    "load_image_part",
]
