"""Pydantic models for the shared-secret access gate."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class AuthStatusResponse(BaseModel):
    isPasswordProtected: bool


class PasswordCheckRequest(BaseModel):
    password: Optional[str] = None


class PasswordCheckResponse(BaseModel):
    success: bool


__all__ = ["AuthStatusResponse", "PasswordCheckRequest", "PasswordCheckResponse"]
