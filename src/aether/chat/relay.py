"""Relay a Gemini token stream to the browser as stream-event frames."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator

from ..gemini import GatewayStream, GeminiClient, GeminiError
from ..schemas.chat import (
    ChatRequest,
    Citation,
    CitationsEvent,
    ErrorEvent,
    StreamEvent,
    TextEvent,
    encode_stream_event,
)
from ..services.attachments import AttachmentMaterializer
from .content_builder import build_contents

logger = logging.getLogger(__name__)


SseEvent = dict[str, str]


def to_sse(event: StreamEvent) -> SseEvent:
    return {"data": encode_stream_event(event)}


class StreamRelay:
    """Open one gateway stream per request and re-emit it frame by frame.

    The relay is split in two phases so that the HTTP layer can still answer
    with a plain JSON error while nothing has been written yet:

    * :meth:`open` converts the request, materializes attachments and starts
      the gateway call. Failures raise.
    * :meth:`relay` yields SSE payloads. Failures become a final ``error``
      frame; the gateway stream is always closed when the generator ends.
    """

    def __init__(
        self,
        gateway: GeminiClient,
        materializer: AttachmentMaterializer,
    ) -> None:
        self._gateway = gateway
        self._materializer = materializer

    async def open(self, request: ChatRequest) -> GatewayStream:
        contents = await build_contents(
            request.history, request.new_parts, self._materializer
        )
        stream = await self._gateway.open_stream(contents)
        logger.info(
            "Gateway stream opened (history=%d, new_parts=%d, images=%d)",
            len(request.history),
            len(request.new_parts),
            len(request.image_parts()),
        )
        return stream

    async def relay(self, stream: GatewayStream) -> AsyncGenerator[SseEvent, None]:
        try:
            async for text in stream.iter_text():
                yield to_sse(TextEvent(text=text))

            citations = stream.citations
            if citations is not None:
                yield to_sse(
                    CitationsEvent(
                        citations=[Citation.model_validate(item) for item in citations]
                    )
                )
            logger.info("Gateway stream completed after %d chunk(s)", stream.chunk_count)
        except asyncio.CancelledError:
            logger.info(
                "Client went away after %d chunk(s); abandoning gateway stream",
                stream.chunk_count,
            )
            raise
        except GeminiError as exc:
            logger.warning(
                "Gateway failed mid-stream (status=%s): %s",
                exc.status_code,
                exc.message,
            )
            yield to_sse(ErrorEvent(error=exc.message))
        except Exception as exc:
            logger.exception("Unexpected error while relaying gateway stream")
            yield to_sse(ErrorEvent(error=str(exc) or "An error occurred."))
        finally:
            await stream.aclose()
            if stream.usage:
                logger.debug("Usage metadata: %s", stream.usage)


__all__ = ["SseEvent", "StreamRelay", "to_sse"]
