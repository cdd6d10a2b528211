"""Turn inline image attachments into Gemini file references."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Protocol
from uuid import uuid4

from ..gemini import GeminiClient, GeminiError

logger = logging.getLogger(__name__)


ALLOWED_ATTACHMENT_MIME_TYPES: frozenset[str] = frozenset(
    {
        "image/png",
        "image/jpeg",
        "image/webp",
        "image/gif",
    }
)


class AttachmentError(RuntimeError):
    """Base error raised for attachment failures."""


class UnsupportedAttachmentType(AttachmentError):
    """Raised when an attachment has a MIME type the model cannot ingest."""


class AttachmentTooLarge(AttachmentError):
    """Raised when an attachment exceeds the configured limit."""


class InvalidAttachmentData(AttachmentError):
    """Raised when inline attachment data is not valid base64."""


class AttachmentUploadFailed(AttachmentError):
    """Raised when the upstream file store rejects or drops an upload."""


class AttachmentMaterializer(Protocol):
    """Anything able to exchange raw bytes for a model-consumable reference."""

    async def materialize(self, data: bytes, mime_type: str) -> dict[str, Any]:
        ...


def decode_inline_data(data: str) -> bytes:
    """Decode base64 attachment data, tolerating a `data:` URL prefix."""

    payload = data.strip()
    if payload.startswith("data:"):
        header, _, payload = payload.partition(",")
        if ";base64" not in header:
            raise InvalidAttachmentData("Inline data URLs must be base64 encoded")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidAttachmentData("Attachment data is not valid base64") from exc


class GeminiFileMaterializer:
    """Upload attachment bytes to the Gemini Files API."""

    def __init__(
        self,
        client: GeminiClient,
        *,
        max_size_bytes: int,
        allowed_mime_types: frozenset[str] = ALLOWED_ATTACHMENT_MIME_TYPES,
    ) -> None:
        self._client = client
        self._max_size_bytes = max_size_bytes
        self._allowed_mime_types = allowed_mime_types

    def validate(self, data: bytes, mime_type: str) -> str:
        normalized = (mime_type or "").strip().lower()
        if normalized not in self._allowed_mime_types:
            raise UnsupportedAttachmentType(normalized or "unknown")
        if not data:
            raise AttachmentError("Attachment payload was empty")
        if len(data) > self._max_size_bytes:
            raise AttachmentTooLarge(
                f"Attachment exceeded {self._max_size_bytes} bytes limit"
            )
        return normalized

    async def materialize(self, data: bytes, mime_type: str) -> dict[str, Any]:
        normalized = self.validate(data, mime_type)
        extension = normalized.split("/", 1)[1]
        display_name = f"upload_{uuid4().hex}.{extension}"

        try:
            file_info = await self._client.upload_file(
                data, normalized, display_name=display_name
            )
        except GeminiError as exc:
            raise AttachmentUploadFailed(
                f"Attachment upload failed: {exc.message}"
            ) from exc

        logger.info(
            "Uploaded attachment %s (%s, %d bytes) as %s",
            display_name,
            normalized,
            len(data),
            file_info.get("uri"),
        )
        return {
            "fileData": {
                "mimeType": file_info.get("mimeType") or normalized,
                "fileUri": file_info["uri"],
            }
        }


__all__ = [
    "ALLOWED_ATTACHMENT_MIME_TYPES",
    "AttachmentError",
    "AttachmentMaterializer",
    "AttachmentTooLarge",
    "AttachmentUploadFailed",
    "GeminiFileMaterializer",
    "InvalidAttachmentData",
    "UnsupportedAttachmentType",
    "decode_inline_data",
]
