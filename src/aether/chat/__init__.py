"""Server-side chat streaming package."""

from .relay import SseEvent, StreamRelay

__all__ = ["SseEvent", "StreamRelay"]
