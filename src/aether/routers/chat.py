"""Chat streaming API routes."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse, Response
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from ..chat import StreamRelay
from ..config import Settings, get_settings
from ..gemini import GeminiClient, GeminiError
from ..schemas.chat import ChatRequest
from ..services.attachments import (
    AttachmentError,
    AttachmentMaterializer,
    AttachmentTooLarge,
    AttachmentUploadFailed,
    GeminiFileMaterializer,
    UnsupportedAttachmentType,
)
from .auth import access_granted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

STREAM_HEADERS = {
    "Connection": "keep-alive",
    "Cache-Control": "no-cache",
}


def get_gemini_client(settings: Settings = Depends(get_settings)) -> GeminiClient:
    return GeminiClient(settings)


def get_attachment_materializer(
    client: GeminiClient = Depends(get_gemini_client),
    settings: Settings = Depends(get_settings),
) -> AttachmentMaterializer:
    return GeminiFileMaterializer(
        client, max_size_bytes=settings.attachments_max_size_bytes
    )


def get_stream_relay(
    client: GeminiClient = Depends(get_gemini_client),
    materializer: AttachmentMaterializer = Depends(get_attachment_materializer),
) -> StreamRelay:
    return StreamRelay(client, materializer)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@router.post("/chat", response_model=None, status_code=200)
async def stream_chat(
    payload: ChatRequest,
    relay: StreamRelay = Depends(get_stream_relay),
    settings: Settings = Depends(get_settings),
    x_access_secret: Optional[str] = Header(default=None),
) -> Response:
    """Stream a Gemini reply as `data: <json>` frames."""

    if not access_granted(settings, x_access_secret):
        return error_response(status.HTTP_401_UNAUTHORIZED, "Access denied.")

    try:
        stream = await relay.open(payload)
    except UnsupportedAttachmentType as exc:
        return error_response(
            status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            f"Unsupported attachment type: {exc}",
        )
    except AttachmentTooLarge as exc:
        return error_response(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, str(exc))
    except AttachmentUploadFailed as exc:
        logger.warning("Attachment upload failed before streaming: %s", exc)
        return error_response(status.HTTP_502_BAD_GATEWAY, str(exc))
    except AttachmentError as exc:
        return error_response(status.HTTP_400_BAD_REQUEST, str(exc))
    except GeminiError as exc:
        logger.warning(
            "Gateway rejected chat request (status=%s): %s",
            exc.status_code,
            exc.message,
        )
        return error_response(status.HTTP_502_BAD_GATEWAY, exc.message)
    except Exception as exc:
        logger.exception("Error in chat API")
        return error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or "An error occurred."
        )

    return EventSourceResponse(
        relay.relay(stream),
        headers=STREAM_HEADERS,
        sep="\n",
        background=BackgroundTask(stream.aclose),
    )


__all__ = [
    "error_response",
    "get_attachment_materializer",
    "get_gemini_client",
    "get_stream_relay",
    "router",
]
