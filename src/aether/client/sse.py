"""Incremental decoder for the relay's `data: <json>` event stream."""

from __future__ import annotations

import codecs
import json
import logging
from typing import Optional

from ..schemas.chat import StreamEvent, decode_stream_event
from .errors import StreamParseError

logger = logging.getLogger(__name__)


FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024


class EventStreamParser:
    """Reassemble frames across arbitrary chunk boundaries.

    Feed raw body chunks in arrival order; each call returns the events whose
    frames were completed by that chunk. An unterminated frame stays buffered
    until a later chunk completes it. Complete frames that do not decode to a
    stream event are skipped. The retained buffer is bounded by
    ``max_buffer_bytes``; crossing the bound raises :class:`StreamParseError`.
    """

    def __init__(self, *, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        if max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be positive")
        self._max_buffer_bytes = max_buffer_bytes
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_frames = 0

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        return self._consume(self._decoder.decode(chunk))

    def close(self) -> list[StreamEvent]:
        """Flush the decoder and try the final, unterminated frame."""

        events = self._consume(self._decoder.decode(b"", final=True))
        remainder, self._buffer = self._buffer, ""
        if remainder.strip():
            event = self._decode_frame(remainder)
            if event is not None:
                events.append(event)
        return events

    def _consume(self, text: str) -> list[StreamEvent]:
        if text:
            # A "\r" left at the end of the previous chunk pairs up here
            self._buffer = (self._buffer + text).replace("\r\n", "\n")

        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)

        if len(self._buffer.encode("utf-8")) > self._max_buffer_bytes:
            size = len(self._buffer)
            self._buffer = ""
            raise StreamParseError(
                f"Unterminated event frame exceeded {self._max_buffer_bytes} bytes "
                f"({size} characters buffered)"
            )

        events: list[StreamEvent] = []
        for frame in frames:
            event = self._decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def _decode_frame(self, frame: str) -> Optional[StreamEvent]:
        data_lines = [
            line[len(DATA_PREFIX):].removeprefix(" ")
            for line in frame.split("\n")
            if line.startswith(DATA_PREFIX)
        ]
        if not data_lines:
            return None

        data = "\n".join(data_lines)
        try:
            return decode_stream_event(json.loads(data))
        except ValueError as exc:
            self.skipped_frames += 1
            logger.debug("Skipping malformed event frame %r: %s", data[:200], exc)
            return None


__all__ = ["DEFAULT_MAX_BUFFER_BYTES", "EventStreamParser"]
