"""Errors raised by the chat client."""

from __future__ import annotations


class ChatClientError(RuntimeError):
    """Base error for failures surfaced while sending a chat turn."""


class ChatRequestError(ChatClientError):
    """The server refused the request before any frame was streamed."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ChatStreamError(ChatClientError):
    """The server reported a failure through an `error` frame."""


class StreamParseError(ChatClientError):
    """The event stream could not be framed within the buffer bound."""


__all__ = [
    "ChatClientError",
    "ChatRequestError",
    "ChatStreamError",
    "StreamParseError",
]
