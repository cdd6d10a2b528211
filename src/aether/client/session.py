"""Client-side send path: one streamed chat turn at a time, cancellable."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import httpx

from ..schemas.chat import ChatMessage, ChatRequest, ErrorEvent, MessagePart, StreamEvent
from .errors import ChatClientError, ChatRequestError, ChatStreamError
from .sse import DEFAULT_MAX_BUFFER_BYTES, EventStreamParser
from .transcript import (
    SendStarted,
    SendStatus,
    StreamCancelled,
    StreamCompleted,
    StreamEventReceived,
    StreamFailed,
    StreamOpened,
    TranscriptAction,
    TranscriptCleared,
    TranscriptStore,
)

logger = logging.getLogger(__name__)


FailureNotifier = Callable[[str], None]


@dataclass
class CancelToken:
    """Identifies one send; once cancelled, its late actions are dropped."""

    message_id: str
    cancelled: bool = False


@dataclass
class _InflightSend:
    token: CancelToken
    task: "asyncio.Task[None]"


def _extract_error_message(raw: bytes, status_code: int) -> str:
    fallback = f"Request failed with status {status_code}."
    if not raw:
        return fallback
    try:
        payload = json.loads(raw.decode("utf-8", errors="ignore"))
    except json.JSONDecodeError:
        return raw.decode("utf-8", errors="ignore").strip() or fallback
    if isinstance(payload, dict):
        message = payload.get("error") or payload.get("detail")
        if isinstance(message, str) and message:
            return message
    return fallback


class ChatSession:
    """Send chat turns to the relay and fold the streamed reply into a store.

    At most one send is in flight. :meth:`cancel` aborts it at the transport
    level and stops any further events from reaching the transcript.
    """

    def __init__(
        self,
        base_url: str,
        *,
        store: Optional[TranscriptStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        access_secret: Optional[str] = None,
        on_failure: Optional[FailureNotifier] = None,
        timeout: float = 300.0,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._store = store or TranscriptStore()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0)
        )
        self._access_secret = access_secret
        self._on_failure = on_failure
        self._max_buffer_bytes = max_buffer_bytes
        self._inflight: Optional[_InflightSend] = None

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def busy(self) -> bool:
        return self._inflight is not None or self._store.state.busy

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self._access_secret:
            headers["X-Access-Secret"] = self._access_secret
        return headers

    async def is_password_protected(self) -> bool:
        response = await self._client.get(f"{self._base_url}/api/auth-check")
        response.raise_for_status()
        return bool(response.json().get("isPasswordProtected"))

    async def verify_password(self, password: str) -> bool:
        """Check the shared secret and remember it for later sends."""

        response = await self._client.post(
            f"{self._base_url}/api/auth-check", json={"password": password}
        )
        if response.status_code == 401:
            return False
        response.raise_for_status()
        success = bool(response.json().get("success"))
        if success:
            self._access_secret = password
        return success

    async def send(self, parts: Sequence[MessagePart]) -> Optional[SendStatus]:
        """Send one user turn and stream the reply.

        Returns the terminal status of the send, or ``None`` when the send was
        ignored because another one is still in flight.
        """

        if self.busy:
            logger.warning("Ignoring send while another reply is streaming")
            return None
        if not parts:
            raise ValueError("At least one message part is required")

        history = list(self._store.state.messages)
        user_message = ChatMessage(role="user", parts=list(parts))
        model_message = ChatMessage.pending()
        token = CancelToken(model_message.id)

        self._store.dispatch(SendStarted(user_message, model_message))
        task = asyncio.create_task(self._stream(token, history, list(parts)))
        self._inflight = _InflightSend(token, task)
        try:
            await task
        except asyncio.CancelledError:
            if not token.cancelled:
                # The caller itself was cancelled; settle the transcript first
                self._abandon(token)
                raise
        except (ChatClientError, httpx.HTTPError) as exc:
            self._fail(token, exc)
        except Exception as exc:
            logger.exception("Unexpected failure while streaming a reply")
            self._apply(
                token,
                StreamFailed(token.message_id, str(exc) or type(exc).__name__),
            )
            raise
        finally:
            self._inflight = None
        return self._store.state.status

    def cancel(self) -> bool:
        """Abort the in-flight send; returns False when there is none."""

        inflight = self._inflight
        if inflight is None or inflight.token.cancelled or inflight.task.done():
            return False
        inflight.task.cancel()
        self._abandon(inflight.token)
        logger.info("Cancelled reply %s", inflight.token.message_id)
        return True

    def clear(self) -> None:
        """Start a fresh conversation, cancelling any reply in progress."""

        self.cancel()
        self._store.dispatch(TranscriptCleared())

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()

    def _abandon(self, token: CancelToken) -> None:
        self._store.dispatch(StreamCancelled(token.message_id))
        token.cancelled = True

    def _fail(self, token: CancelToken, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        logger.warning("Chat reply failed: %s", message)
        self._apply(token, StreamFailed(token.message_id, message))
        if token.cancelled:
            return
        if self._on_failure is not None:
            self._on_failure(message)

    def _apply(self, token: CancelToken, action: TranscriptAction) -> None:
        if token.cancelled:
            logger.debug(
                "Dropping %s for cancelled reply %s",
                type(action).__name__,
                token.message_id,
            )
            return
        self._store.dispatch(action)

    def _apply_event(self, token: CancelToken, event: StreamEvent) -> None:
        self._apply(token, StreamEventReceived(token.message_id, event))
        if isinstance(event, ErrorEvent):
            raise ChatStreamError(event.error)

    async def _stream(
        self,
        token: CancelToken,
        history: list[ChatMessage],
        parts: list[MessagePart],
    ) -> None:
        request = ChatRequest(history=history, new_parts=parts)
        payload: dict[str, Any] = request.model_dump(
            mode="json", by_alias=True, exclude_none=True
        )

        async with self._client.stream(
            "POST",
            f"{self._base_url}/api/chat",
            json=payload,
            headers=self._headers(),
        ) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise ChatRequestError(
                    response.status_code,
                    _extract_error_message(body, response.status_code),
                )

            self._apply(token, StreamOpened(token.message_id))
            parser = EventStreamParser(max_buffer_bytes=self._max_buffer_bytes)
            async for chunk in response.aiter_bytes():
                for event in parser.feed(chunk):
                    self._apply_event(token, event)
            for event in parser.close():
                self._apply_event(token, event)

        self._apply(token, StreamCompleted(token.message_id))


__all__ = ["CancelToken", "ChatSession", "FailureNotifier"]
