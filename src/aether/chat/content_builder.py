"""Convert transcript messages into Gemini `contents` entries."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from ..schemas.chat import ChatMessage, ImagePart, MessagePart, TextPart
from ..services.attachments import AttachmentMaterializer, decode_inline_data

logger = logging.getLogger(__name__)


async def convert_parts(
    parts: Sequence[MessagePart],
    materializer: AttachmentMaterializer,
) -> list[dict[str, Any]]:
    """Map message parts to Gemini parts, uploading images on the way."""

    converted: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            # Gemini rejects empty text parts
            if part.text:
                converted.append({"text": part.text})
        elif isinstance(part, ImagePart):
            data = decode_inline_data(part.data)
            converted.append(await materializer.materialize(data, part.mime_type))
    return converted


async def build_contents(
    history: Sequence[ChatMessage],
    new_parts: Sequence[MessagePart],
    materializer: AttachmentMaterializer,
) -> list[dict[str, Any]]:
    """Return the full conversation, oldest first, ending with the new user turn."""

    contents: list[dict[str, Any]] = []
    for message in history:
        parts = await convert_parts(message.parts, materializer)
        if not parts:
            logger.debug("Skipping empty %s message %s", message.role, message.id)
            continue
        contents.append({"role": message.role, "parts": parts})

    contents.append(
        {"role": "user", "parts": await convert_parts(new_parts, materializer)}
    )
    return contents


__all__ = ["build_contents", "convert_parts"]
