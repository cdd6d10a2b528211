"""Transcript state, the pure reducer that folds stream events into it, and
the observable store that owns it."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional, Union

from ..schemas.chat import (
    ChatMessage,
    CitationsEvent,
    ErrorEvent,
    StreamEvent,
    TextEvent,
    TextPart,
)

logger = logging.getLogger(__name__)


class SendStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def busy(self) -> bool:
        return self in (SendStatus.SENDING, SendStatus.STREAMING)


@dataclass(frozen=True)
class SendStarted:
    user_message: ChatMessage
    model_message: ChatMessage


@dataclass(frozen=True)
class StreamOpened:
    message_id: str


@dataclass(frozen=True)
class StreamEventReceived:
    message_id: str
    event: StreamEvent


@dataclass(frozen=True)
class StreamCompleted:
    message_id: str


@dataclass(frozen=True)
class StreamFailed:
    message_id: str
    error: str


@dataclass(frozen=True)
class StreamCancelled:
    message_id: str


@dataclass(frozen=True)
class TranscriptCleared:
    pass


TranscriptAction = Union[
    SendStarted,
    StreamOpened,
    StreamEventReceived,
    StreamCompleted,
    StreamFailed,
    StreamCancelled,
    TranscriptCleared,
]


@dataclass(frozen=True)
class TranscriptState:
    messages: tuple[ChatMessage, ...] = field(default_factory=tuple)
    pending_id: Optional[str] = None
    status: SendStatus = SendStatus.IDLE
    error: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.status.busy

    @property
    def pending(self) -> Optional[ChatMessage]:
        if self.pending_id is None:
            return None
        for message in reversed(self.messages):
            if message.id == self.pending_id:
                return message
        return None


def _replace_message(
    state: TranscriptState, updated: ChatMessage
) -> tuple[ChatMessage, ...]:
    return tuple(updated if item.id == updated.id else item for item in state.messages)


def _append_text(state: TranscriptState, pending: ChatMessage, text: str) -> TranscriptState:
    parts = list(pending.parts)
    for index, part in enumerate(parts):
        if isinstance(part, TextPart):
            parts[index] = TextPart(text=part.text + text)
            break
    else:
        parts.append(TextPart(text=text))
    updated = pending.model_copy(update={"parts": parts})
    return replace(
        state,
        messages=_replace_message(state, updated),
        status=SendStatus.STREAMING,
    )


def _set_citations(
    state: TranscriptState, pending: ChatMessage, event: CitationsEvent
) -> TranscriptState:
    if pending.citations is not None:
        # Citations are written once per message; later sets are rejected.
        logger.debug("Ignoring repeated citations for message %s", pending.id)
        return state
    updated = pending.model_copy(update={"citations": list(event.citations)})
    return replace(
        state,
        messages=_replace_message(state, updated),
        status=SendStatus.STREAMING,
    )


def _discard_pending(state: TranscriptState, error: str) -> TranscriptState:
    return replace(
        state,
        messages=tuple(item for item in state.messages if item.id != state.pending_id),
        pending_id=None,
        status=SendStatus.ERRORED,
        error=error,
    )


def _apply_event(
    state: TranscriptState, pending: ChatMessage, event: StreamEvent
) -> TranscriptState:
    if isinstance(event, TextEvent):
        return _append_text(state, pending, event.text)
    if isinstance(event, CitationsEvent):
        return _set_citations(state, pending, event)
    if isinstance(event, ErrorEvent):
        return _discard_pending(state, event.error)
    raise TypeError(f"Unsupported stream event: {event!r}")


def reduce_transcript(
    state: TranscriptState, action: TranscriptAction
) -> TranscriptState:
    """Return the transcript that results from applying `action` to `state`."""

    if isinstance(action, SendStarted):
        if state.busy:
            return state
        return TranscriptState(
            messages=state.messages + (action.user_message, action.model_message),
            pending_id=action.model_message.id,
            status=SendStatus.SENDING,
        )

    if isinstance(action, TranscriptCleared):
        return TranscriptState()

    if not isinstance(
        action,
        (StreamOpened, StreamEventReceived, StreamCompleted, StreamFailed, StreamCancelled),
    ):
        raise TypeError(f"Unsupported transcript action: {action!r}")

    pending = state.pending
    if pending is None or action.message_id != pending.id:
        # Stale action for a send that already finished or was cancelled
        return state

    if isinstance(action, StreamOpened):
        return replace(state, status=SendStatus.STREAMING)
    if isinstance(action, StreamEventReceived):
        return _apply_event(state, pending, action.event)
    if isinstance(action, StreamCompleted):
        return replace(state, pending_id=None, status=SendStatus.COMPLETED)
    if isinstance(action, StreamFailed):
        return _discard_pending(state, action.error)

    # StreamCancelled: keep whatever already streamed, drop an empty placeholder
    messages = state.messages
    if not pending.text and pending.citations is None:
        messages = tuple(item for item in messages if item.id != pending.id)
    return replace(
        state, messages=messages, pending_id=None, status=SendStatus.CANCELLED
    )


Listener = Callable[[TranscriptState, TranscriptAction], None]


class TranscriptStore:
    """Own the transcript and notify observers after every change."""

    def __init__(self, state: Optional[TranscriptState] = None) -> None:
        self._state = state or TranscriptState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> TranscriptState:
        return self._state

    def dispatch(self, action: TranscriptAction) -> TranscriptState:
        previous = self._state
        self._state = reduce_transcript(previous, action)
        if self._state is not previous:
            for listener in list(self._listeners):
                listener(self._state, action)
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


__all__ = [
    "SendStarted",
    "SendStatus",
    "StreamCancelled",
    "StreamCompleted",
    "StreamEventReceived",
    "StreamFailed",
    "StreamOpened",
    "TranscriptAction",
    "TranscriptCleared",
    "TranscriptState",
    "TranscriptStore",
    "reduce_transcript",
]
