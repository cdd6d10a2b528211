"""Shared-secret access gate routes."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..schemas.auth import (
    AuthStatusResponse,
    PasswordCheckRequest,
    PasswordCheckResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth-check", tags=["auth"])


def access_granted(settings: Settings, candidate: Optional[str]) -> bool:
    """Return True when no secret is configured or `candidate` matches it."""

    if not settings.is_password_protected:
        return True
    if candidate is None:
        return False
    expected = settings.access_secret.get_secret_value()  # type: ignore[union-attr]
    return secrets.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))


@router.get("", response_model=AuthStatusResponse)
async def get_auth_status(
    settings: Settings = Depends(get_settings),
) -> AuthStatusResponse:
    return AuthStatusResponse(isPasswordProtected=settings.is_password_protected)


@router.post("", response_model=PasswordCheckResponse)
async def verify_password(
    payload: PasswordCheckRequest,
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    if access_granted(settings, payload.password):
        return JSONResponse(PasswordCheckResponse(success=True).model_dump())

    logger.info("Rejected access attempt with an invalid password")
    return JSONResponse(
        PasswordCheckResponse(success=False).model_dump(), status_code=401
    )


__all__ = ["access_granted", "router"]
