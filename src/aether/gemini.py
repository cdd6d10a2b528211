"""Gemini streaming client utilities."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Mapping, Optional, Sequence

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


SAFETY_CATEGORIES: tuple[str, ...] = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


class GeminiError(Exception):
    """Wrap transport or API failures when communicating with Gemini."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail

    @property
    def message(self) -> str:
        if isinstance(self.detail, str):
            return self.detail
        return json.dumps(self.detail)


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


async def iter_sse_events(
    response: httpx.Response,
) -> AsyncGenerator[ServerSentEvent, None]:
    buffer: list[str] = []
    async for line in response.aiter_lines():
        if not line:
            if buffer:
                yield parse_sse_event(buffer)
                buffer.clear()
            continue
        if line.startswith(":"):
            continue
        buffer.append(line)
    if buffer:
        yield parse_sse_event(buffer)


def parse_sse_event(lines: Iterable[str]) -> ServerSentEvent:
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: list[str] = []

    for line in lines:
        field, _, value = line.partition(":")
        value = value.lstrip(" ")
        if field == "event":
            event_name = value or None
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value or None

    data = "\n".join(data_lines)
    return ServerSentEvent(data=data, event=event_name or "message", event_id=event_id)


def _first_candidate(chunk: Mapping[str, Any]) -> Mapping[str, Any] | None:
    candidates = chunk.get("candidates")
    if not isinstance(candidates, Sequence) or not candidates:
        return None
    candidate = candidates[0]
    return candidate if isinstance(candidate, Mapping) else None


def extract_chunk_text(chunk: Mapping[str, Any]) -> str:
    """Concatenate the visible text parts of a streamed response chunk."""

    candidate = _first_candidate(chunk)
    if candidate is None:
        return ""
    content = candidate.get("content")
    if not isinstance(content, Mapping):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, Sequence):
        return ""
    fragments: list[str] = []
    for part in parts:
        if not isinstance(part, Mapping) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            fragments.append(text)
    return "".join(fragments)


def extract_citation_sources(chunk: Mapping[str, Any]) -> list[dict[str, Any]] | None:
    """Return `citationMetadata` sources when the chunk carries them."""

    candidate = _first_candidate(chunk)
    if candidate is None:
        return None
    metadata = candidate.get("citationMetadata")
    if not isinstance(metadata, Mapping):
        return None
    sources = metadata.get("citationSources", metadata.get("citations"))
    if not isinstance(sources, Sequence):
        return None
    return [dict(source) for source in sources if isinstance(source, Mapping)]


def extract_grounding_citations(
    chunk: Mapping[str, Any],
) -> list[dict[str, Any]] | None:
    """Convert Google Search grounding metadata into citation records."""

    candidate = _first_candidate(chunk)
    if candidate is None:
        return None
    metadata = candidate.get("groundingMetadata")
    if not isinstance(metadata, Mapping):
        return None
    raw_chunks = metadata.get("groundingChunks")
    if not isinstance(raw_chunks, Sequence) or not raw_chunks:
        return None

    sources: list[dict[str, Any]] = []
    for raw in raw_chunks:
        web = raw.get("web") if isinstance(raw, Mapping) else None
        sources.append(dict(web) if isinstance(web, Mapping) else {})

    supports = metadata.get("groundingSupports")
    if not isinstance(supports, Sequence) or not supports:
        return [
            {"uri": source.get("uri"), "title": source.get("title")}
            for source in sources
            if source.get("uri")
        ]

    citations: list[dict[str, Any]] = []
    for support in supports:
        if not isinstance(support, Mapping):
            continue
        segment = support.get("segment")
        segment = segment if isinstance(segment, Mapping) else {}
        for index in support.get("groundingChunkIndices") or []:
            if not isinstance(index, int) or not 0 <= index < len(sources):
                continue
            source = sources[index]
            citations.append(
                {
                    "startIndex": segment.get("startIndex", 0),
                    "endIndex": segment.get("endIndex"),
                    "uri": source.get("uri"),
                    "title": source.get("title"),
                }
            )
    return citations


class GatewayStream:
    """Incremental view of one `streamGenerateContent` response."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._closed = False
        self._citation_sources: list[dict[str, Any]] | None = None
        self._grounding_citations: list[dict[str, Any]] | None = None
        self.usage: dict[str, Any] | None = None
        self.chunk_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def citations(self) -> list[dict[str, Any]] | None:
        """Citation metadata seen so far; explicit sources win over grounding."""

        if self._citation_sources is not None:
            return self._citation_sources
        return self._grounding_citations

    async def iter_text(self) -> AsyncGenerator[str, None]:
        """Yield each non-empty token chunk as Gemini produces it."""

        try:
            async for event in iter_sse_events(self._response):
                if not event.data:
                    continue
                try:
                    chunk = json.loads(event.data)
                except json.JSONDecodeError as exc:
                    raise GeminiError(
                        status.HTTP_502_BAD_GATEWAY,
                        f"Malformed Gemini stream chunk: {exc.msg}",
                    ) from exc
                if not isinstance(chunk, Mapping):
                    continue
                self._absorb_metadata(chunk)
                text = extract_chunk_text(chunk)
                if text:
                    self.chunk_count += 1
                    yield text
        except httpx.HTTPError as exc:
            raise GeminiError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    def _absorb_metadata(self, chunk: Mapping[str, Any]) -> None:
        error = chunk.get("error")
        if isinstance(error, Mapping):
            code = error.get("code")
            raise GeminiError(
                code if isinstance(code, int) else status.HTTP_502_BAD_GATEWAY,
                error.get("message") or dict(error),
            )

        feedback = chunk.get("promptFeedback")
        if isinstance(feedback, Mapping) and feedback.get("blockReason"):
            raise GeminiError(
                status.HTTP_400_BAD_REQUEST,
                f"Prompt blocked by Gemini: {feedback['blockReason']}",
            )

        sources = extract_citation_sources(chunk)
        if sources is not None:
            self._citation_sources = sources
        grounding = extract_grounding_citations(chunk)
        if grounding is not None:
            self._grounding_citations = grounding

        usage = chunk.get("usageMetadata")
        if isinstance(usage, Mapping):
            self.usage = dict(usage)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()


class GeminiClient:
    """Client responsible for streaming content generation from Gemini."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "x-goog-api-key": self._settings.gateway_api_key.get_secret_value(),
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        """Return the Gemini API base URL without a trailing slash."""

        return str(self._settings.gateway_base_url).rstrip("/")

    def build_payload(self, contents: Sequence[Mapping[str, Any]]) -> dict[str, Any]:
        """Assemble the `generateContent` body for a conversation."""

        settings = self._settings
        payload: dict[str, Any] = {
            "contents": list(contents),
            "generationConfig": {
                "temperature": settings.temperature,
                "topP": settings.top_p,
                "topK": settings.top_k,
                "maxOutputTokens": settings.max_output_tokens,
                "responseMimeType": "text/plain",
            },
            "safetySettings": [
                {"category": category, "threshold": SAFETY_THRESHOLD}
                for category in SAFETY_CATEGORIES
            ],
        }
        if settings.enable_search_grounding:
            payload["tools"] = [{"google_search": {}}]
        return payload

    async def open_stream(
        self, contents: Sequence[Mapping[str, Any]]
    ) -> GatewayStream:
        """Start a streaming generation and return once headers are accepted."""

        url = (
            f"{self._base_url}/v1beta/models/"
            f"{self._settings.gateway_model}:streamGenerateContent"
        )
        client = await self._get_http_client()
        request = client.build_request(
            "POST",
            url,
            params={"alt": "sse"},
            headers=self._headers,
            json=self.build_payload(contents),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise GeminiError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            try:
                body = await response.aread()
            finally:
                await response.aclose()
            raise GeminiError(response.status_code, self._extract_error_detail(body))

        logger.debug(
            "Opened Gemini stream for model %s (%d content entries)",
            self._settings.gateway_model,
            len(contents),
        )
        return GatewayStream(response)

    async def upload_file(
        self,
        data: bytes,
        mime_type: str,
        *,
        display_name: str | None = None,
    ) -> dict[str, Any]:
        """Upload bytes through the Files API resumable protocol."""

        client = await self._get_http_client()
        api_key = self._settings.gateway_api_key.get_secret_value()
        start_headers = {
            "x-goog-api-key": api_key,
            "X-Goog-Upload-Protocol": "resumable",
            "X-Goog-Upload-Command": "start",
            "X-Goog-Upload-Header-Content-Length": str(len(data)),
            "X-Goog-Upload-Header-Content-Type": mime_type,
            "Content-Type": "application/json",
        }
        metadata: dict[str, Any] = {"file": {}}
        if display_name:
            metadata["file"]["display_name"] = display_name

        try:
            start = await client.post(
                f"{self._base_url}/upload/v1beta/files",
                headers=start_headers,
                json=metadata,
            )
            if start.status_code >= 400:
                raise GeminiError(
                    start.status_code, self._extract_error_detail(start.content)
                )
            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise GeminiError(
                    status.HTTP_502_BAD_GATEWAY,
                    "Gemini did not return a resumable upload URL",
                )

            finished = await client.post(
                upload_url,
                headers={
                    "x-goog-api-key": api_key,
                    "X-Goog-Upload-Offset": "0",
                    "X-Goog-Upload-Command": "upload, finalize",
                },
                content=data,
            )
        except httpx.HTTPError as exc:
            raise GeminiError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if finished.status_code >= 400:
            raise GeminiError(
                finished.status_code, self._extract_error_detail(finished.content)
            )
        try:
            body = finished.json()
        except ValueError as exc:
            raise GeminiError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        file_info = body.get("file") if isinstance(body, Mapping) else None
        if not isinstance(file_info, Mapping) or not file_info.get("uri"):
            raise GeminiError(
                status.HTTP_502_BAD_GATEWAY, "Upload response missing file URI"
            )
        return dict(file_info)

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close pooled HTTP client", exc_info=True)

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Gemini returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
            return error or payload
        return payload


__all__ = [
    "GatewayStream",
    "GeminiClient",
    "GeminiError",
    "ServerSentEvent",
    "extract_chunk_text",
    "extract_citation_sources",
    "extract_grounding_citations",
]
