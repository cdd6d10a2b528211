"""Pydantic models for chat messages and stream events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class TextPart(BaseModel):
    """Plain text fragment of a message."""

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Inline image fragment carrying base64-encoded bytes."""

    type: Literal["image"] = "image"
    mime_type: str = Field(alias="mimeType")
    data: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


MessagePart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class Citation(BaseModel):
    """Attribution metadata returned by the model; passed through untouched."""

    start_index: Optional[int] = Field(default=None, alias="startIndex")
    end_index: Optional[int] = Field(default=None, alias="endIndex")
    uri: Optional[str] = None
    title: Optional[str] = None
    license: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


def _new_message_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMessage(BaseModel):
    """Represents a single turn in the transcript."""

    id: str = Field(default_factory=_new_message_id)
    role: Literal["user", "model"]
    parts: List[MessagePart]
    citations: Optional[List[Citation]] = None
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def pending(cls) -> "ChatMessage":
        """Return an empty model message ready to accumulate streamed text."""

        return cls(role="model", parts=[TextPart(text="")])

    @property
    def text(self) -> str:
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))


class ChatRequest(BaseModel):
    """Incoming payload for the streaming chat endpoint."""

    history: List[ChatMessage] = Field(default_factory=list)
    new_parts: List[MessagePart] = Field(alias="newParts", min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    def image_parts(self) -> list[ImagePart]:
        images = [
            part
            for message in self.history
            for part in message.parts
            if isinstance(part, ImagePart)
        ]
        images.extend(part for part in self.new_parts if isinstance(part, ImagePart))
        return images


class TextEvent(BaseModel):
    text: str

    model_config = ConfigDict(extra="forbid", frozen=True)


class CitationsEvent(BaseModel):
    citations: List[Citation]

    model_config = ConfigDict(extra="forbid", frozen=True)


class ErrorEvent(BaseModel):
    error: str

    model_config = ConfigDict(extra="forbid", frozen=True)


StreamEvent = Union[TextEvent, CitationsEvent, ErrorEvent]

_EVENT_TYPES: dict[str, type[BaseModel]] = {
    "text": TextEvent,
    "citations": CitationsEvent,
    "error": ErrorEvent,
}


def decode_stream_event(payload: Any) -> StreamEvent:
    """Decode a JSON frame body into exactly one typed stream event."""

    if not isinstance(payload, dict):
        raise ValueError("Stream event must be a JSON object")
    if len(payload) != 1:
        raise ValueError(
            f"Stream event must carry exactly one field, got {sorted(payload)}"
        )
    (key,) = payload
    event_type = _EVENT_TYPES.get(key)
    if event_type is None:
        raise ValueError(f"Unknown stream event field: {key!r}")
    try:
        return event_type.model_validate(payload)  # type: ignore[return-value]
    except ValidationError as exc:
        raise ValueError(f"Invalid {key!r} stream event: {exc}") from exc


def encode_stream_event(event: StreamEvent) -> str:
    """Serialize a stream event as the JSON body of one frame."""

    return event.model_dump_json(by_alias=True, exclude_none=True)


__all__ = [
    "ChatMessage",
    "ChatRequest",
    "Citation",
    "CitationsEvent",
    "ErrorEvent",
    "ImagePart",
    "MessagePart",
    "StreamEvent",
    "TextEvent",
    "TextPart",
    "decode_stream_event",
    "encode_stream_event",
]
