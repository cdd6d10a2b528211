from __future__ import annotations

import base64
import json
from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from aether.app import create_app
from aether.client.sse import EventStreamParser
from aether.config import get_settings
from aether.gemini import GeminiClient
from aether.routers.chat import get_attachment_materializer, get_gemini_client
from aether.schemas.chat import Citation, CitationsEvent, ErrorEvent, TextEvent

PNG_B64 = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


def gemini_chunk(text: str = "", **candidate: Any) -> dict[str, Any]:
    candidate["content"] = {"role": "model", "parts": [{"text": text}]}
    return {"candidates": [candidate]}


def gemini_body(*chunks: dict[str, Any]) -> bytes:
    return b"".join(f"data: {json.dumps(c)}\r\n\r\n".encode("utf-8") for c in chunks)


class RecordingMaterializer:
    def __init__(self, log: list[str]) -> None:
        self.log = log
        self.calls: list[tuple[bytes, str]] = []

    async def materialize(self, data: bytes, mime_type: str) -> dict[str, Any]:
        self.log.append("materialize")
        self.calls.append((data, mime_type))
        return {"fileData": {"mimeType": mime_type, "fileUri": "https://gemini.test/files/1"}}


def make_client(
    handler: Callable[[httpx.Request], Any],
    *,
    materializer: Any = None,
) -> TestClient:
    app = create_app()
    gateway = GeminiClient(
        get_settings(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    app.dependency_overrides[get_gemini_client] = lambda: gateway
    if materializer is not None:
        app.dependency_overrides[get_attachment_materializer] = lambda: materializer
    return TestClient(app)


def parse_frames(body: bytes) -> list:
    parser = EventStreamParser()
    events = parser.feed(body)
    assert parser.close() == []
    assert parser.skipped_frames == 0
    return events


def text_request(text: str = "hello") -> dict[str, Any]:
    return {"history": [], "newParts": [{"type": "text", "text": text}]}


def test_chat_streams_text_then_citations(gateway_env: pytest.MonkeyPatch) -> None:
    body = gemini_body(
        gemini_chunk("He"),
        gemini_chunk("llo!"),
        gemini_chunk(citationMetadata={"citationSources": []}, finishReason="STOP"),
    )
    client = make_client(
        lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=body
        )
    )

    response = client.post("/api/chat", json=text_request())

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.content.endswith(b"\n\n")
    for frame in response.text.strip().split("\n\n"):
        assert frame.startswith("data: ")
    assert parse_frames(response.content) == [
        TextEvent(text="He"),
        TextEvent(text="llo!"),
        CitationsEvent(citations=[]),
    ]


def test_chat_relays_grounding_citations(gateway_env: pytest.MonkeyPatch) -> None:
    grounding = {
        "groundingChunks": [{"web": {"uri": "https://a.example", "title": "A"}}],
        "groundingSupports": [
            {"segment": {"startIndex": 0, "endIndex": 5}, "groundingChunkIndices": [0]}
        ],
    }
    body = gemini_body(gemini_chunk("Paris", groundingMetadata=grounding))
    client = make_client(lambda request: httpx.Response(200, content=body))

    response = client.post("/api/chat", json=text_request("capital of France?"))

    assert parse_frames(response.content) == [
        TextEvent(text="Paris"),
        CitationsEvent(
            citations=[
                Citation(start_index=0, end_index=5, uri="https://a.example", title="A")
            ]
        ),
    ]


def test_images_are_materialized_before_gateway_call(
    gateway_env: pytest.MonkeyPatch,
) -> None:
    log: list[str] = []
    sent: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        log.append("gateway")
        sent.append(json.loads(request.content))
        return httpx.Response(200, content=gemini_body(gemini_chunk("A cat.")))

    materializer = RecordingMaterializer(log)
    client = make_client(handler, materializer=materializer)

    response = client.post(
        "/api/chat",
        json={
            "history": [
                {"id": "u1", "role": "user", "parts": [{"type": "text", "text": "hi"}]},
                {"id": "m1", "role": "model", "parts": [{"type": "text", "text": "hello"}]},
            ],
            "newParts": [
                {"type": "text", "text": "what is this?"},
                {"type": "image", "mimeType": "image/png", "data": PNG_B64},
            ],
        },
    )

    assert response.status_code == 200
    assert log == ["materialize", "gateway"]
    assert len(materializer.calls) == 1
    contents = sent[0]["contents"]
    assert [entry["role"] for entry in contents] == ["user", "model", "user"]
    assert contents[-1]["parts"] == [
        {"text": "what is this?"},
        {"fileData": {"mimeType": "image/png", "fileUri": "https://gemini.test/files/1"}},
    ]
    assert PNG_B64 not in json.dumps(sent[0])


def test_gateway_rejection_returns_json_error(gateway_env: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": {"code": 400, "message": "API key not valid"}}
        )

    client = make_client(handler)

    response = client.post("/api/chat", json=text_request())

    assert response.status_code == 502
    assert response.json() == {"error": "API key not valid"}


def test_gateway_failure_mid_stream_ends_with_error_frame(
    gateway_env: pytest.MonkeyPatch,
) -> None:
    body = gemini_body(
        gemini_chunk("partial"),
        {"error": {"code": 500, "message": "Internal error"}},
    )
    client = make_client(lambda request: httpx.Response(200, content=body))

    response = client.post("/api/chat", json=text_request())

    assert response.status_code == 200
    events = parse_frames(response.content)
    assert events == [TextEvent(text="partial"), ErrorEvent(error="Internal error")]


def test_unsupported_attachment_type_is_rejected(gateway_env: pytest.MonkeyPatch) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    client = make_client(handler)

    response = client.post(
        "/api/chat",
        json={"newParts": [{"type": "image", "mimeType": "image/bmp", "data": PNG_B64}]},
    )

    assert response.status_code == 415
    assert "image/bmp" in response.json()["error"]
    assert calls == []


def test_invalid_attachment_data_is_rejected(gateway_env: pytest.MonkeyPatch) -> None:
    client = make_client(lambda request: httpx.Response(200))

    response = client.post(
        "/api/chat",
        json={"newParts": [{"type": "image", "mimeType": "image/png", "data": "%%%"}]},
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Attachment data is not valid base64"}


def test_attachment_upload_failure_returns_bad_gateway(
    gateway_env: pytest.MonkeyPatch,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": {"code": 503, "message": "Unavailable"}})

    client = make_client(handler)

    response = client.post(
        "/api/chat",
        json={"newParts": [{"type": "image", "mimeType": "image/png", "data": PNG_B64}]},
    )

    assert response.status_code == 502
    assert "Unavailable" in response.json()["error"]


def test_malformed_request_returns_error_field(gateway_env: pytest.MonkeyPatch) -> None:
    client = make_client(lambda request: httpx.Response(200))

    response = client.post("/api/chat", json={"history": []})

    assert response.status_code == 400
    assert "newParts" in response.json()["error"]


def test_chat_requires_access_secret_when_configured(
    gateway_env: pytest.MonkeyPatch,
) -> None:
    gateway_env.setenv("ACCESS_SECRET", "s3cret")
    get_settings.cache_clear()
    client = make_client(
        lambda request: httpx.Response(200, content=gemini_body(gemini_chunk("ok")))
    )

    denied = client.post("/api/chat", json=text_request())
    wrong = client.post(
        "/api/chat", json=text_request(), headers={"X-Access-Secret": "nope"}
    )
    allowed = client.post(
        "/api/chat", json=text_request(), headers={"X-Access-Secret": "s3cret"}
    )

    assert denied.status_code == 401
    assert denied.json() == {"error": "Access denied."}
    assert wrong.status_code == 401
    assert allowed.status_code == 200
    assert parse_frames(allowed.content) == [TextEvent(text="ok")]


def test_health_reports_model(gateway_env: pytest.MonkeyPatch) -> None:
    gateway_env.setenv("GATEWAY_MODEL", "gemini-test")
    get_settings.cache_clear()
    client = make_client(lambda request: httpx.Response(200))

    response = client.get("/health")

    assert response.json() == {"status": "ok", "model": "gemini-test"}
