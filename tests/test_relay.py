from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, Optional

import pytest

from aether.chat.relay import StreamRelay
from aether.gemini import GeminiError
from aether.schemas.chat import ChatRequest, TextPart


class FakeStream:
    def __init__(
        self,
        chunks: list[str],
        *,
        citations: Optional[list[dict[str, Any]]] = None,
        error: Optional[BaseException] = None,
        block: bool = False,
    ) -> None:
        self._chunks = chunks
        self._error = error
        self._block = block
        self.citations = citations
        self.usage: Optional[dict[str, Any]] = None
        self.chunk_count = 0
        self.close_calls = 0
        self.blocked = asyncio.Event()

    async def iter_text(self) -> AsyncGenerator[str, None]:
        for text in self._chunks:
            self.chunk_count += 1
            yield text
        if self._error is not None:
            raise self._error
        if self._block:
            self.blocked.set()
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.close_calls += 1


class FakeGateway:
    def __init__(self, stream: FakeStream) -> None:
        self.stream = stream
        self.contents: list[list[dict[str, Any]]] = []

    async def open_stream(self, contents):
        self.contents.append(list(contents))
        return self.stream


class NoUploads:
    async def materialize(self, data: bytes, mime_type: str) -> dict[str, Any]:
        raise AssertionError("no attachments expected")


async def collect(relay: StreamRelay, stream: FakeStream) -> list[dict[str, Any]]:
    return [json.loads(event["data"]) async for event in relay.relay(stream)]


@pytest.mark.asyncio
async def test_open_sends_converted_conversation_to_gateway() -> None:
    gateway = FakeGateway(FakeStream([]))
    relay = StreamRelay(gateway, NoUploads())  # type: ignore[arg-type]

    stream = await relay.open(ChatRequest(new_parts=[TextPart(text="hello")]))

    assert stream is gateway.stream
    assert gateway.contents == [[{"role": "user", "parts": [{"text": "hello"}]}]]


@pytest.mark.asyncio
async def test_relay_emits_text_then_citations() -> None:
    stream = FakeStream(
        ["He", "llo!"],
        citations=[{"startIndex": 0, "endIndex": 6, "uri": "https://a.example", "title": None}],
    )
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]

    frames = await collect(relay, stream)

    assert frames == [
        {"text": "He"},
        {"text": "llo!"},
        {"citations": [{"startIndex": 0, "endIndex": 6, "uri": "https://a.example"}]},
    ]
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_relay_omits_citations_frame_when_none_reported() -> None:
    stream = FakeStream(["only text"])
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]

    assert await collect(relay, stream) == [{"text": "only text"}]


@pytest.mark.asyncio
async def test_gateway_failure_becomes_final_error_frame() -> None:
    stream = FakeStream(["partial"], error=GeminiError(429, "Resource exhausted"))
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]

    frames = await collect(relay, stream)

    assert frames == [{"text": "partial"}, {"error": "Resource exhausted"}]
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_final_error_frame() -> None:
    stream = FakeStream([], error=RuntimeError("kaboom"))
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]

    assert await collect(relay, stream) == [{"error": "kaboom"}]


@pytest.mark.asyncio
async def test_consumer_going_away_closes_gateway_without_error_frame() -> None:
    stream = FakeStream(["a", "b"], block=True)
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]
    received: list[dict[str, Any]] = []

    async def consume() -> None:
        async for event in relay.relay(stream):
            received.append(json.loads(event["data"]))

    task = asyncio.create_task(consume())
    await asyncio.wait_for(stream.blocked.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert received == [{"text": "a"}, {"text": "b"}]
    assert stream.close_calls == 1


@pytest.mark.asyncio
async def test_early_close_of_relay_generator_closes_gateway() -> None:
    stream = FakeStream(["a", "b", "c"])
    relay = StreamRelay(FakeGateway(stream), NoUploads())  # type: ignore[arg-type]

    events = relay.relay(stream)
    first = await events.__anext__()
    await events.aclose()

    assert json.loads(first["data"]) == {"text": "a"}
    assert stream.close_calls == 1
