"""Client core: frame parser, transcript reducer and cancellable send path."""

from .errors import ChatClientError, ChatRequestError, ChatStreamError, StreamParseError
from .session import ChatSession
from .sse import EventStreamParser
from .transcript import SendStatus, TranscriptState, TranscriptStore, reduce_transcript

__all__ = [
    "ChatClientError",
    "ChatRequestError",
    "ChatSession",
    "ChatStreamError",
    "EventStreamParser",
    "SendStatus",
    "StreamParseError",
    "TranscriptState",
    "TranscriptStore",
    "reduce_transcript",
]
