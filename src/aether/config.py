"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    gateway_api_key: SecretStr = Field(
        ...,
        validation_alias=AliasChoices(
            "GATEWAY_API_KEY", "GEMINI_API_KEY", "gateway_api_key"
        ),
    )
    gateway_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl(
            "https://generativelanguage.googleapis.com"
        ),
        validation_alias=AliasChoices("GATEWAY_BASE_URL", "gateway_base_url"),
    )
    gateway_model: str = Field(
        default="gemini-2.5-flash",
        validation_alias=AliasChoices("GATEWAY_MODEL", "gateway_model"),
    )
    enable_search_grounding: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "ENABLE_SEARCH_GROUNDING", "enable_search_grounding"
        ),
    )
    access_secret: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ACCESS_SECRET", "AETHER_PASSWORD", "access_secret"
        ),
    )

    temperature: float = Field(
        default=1.0,
        ge=0,
        le=2,
        validation_alias=AliasChoices("GATEWAY_TEMPERATURE", "temperature"),
    )
    top_p: float = Field(
        default=0.95,
        ge=0,
        le=1,
        validation_alias=AliasChoices("GATEWAY_TOP_P", "top_p"),
    )
    top_k: int = Field(
        default=64,
        ge=1,
        validation_alias=AliasChoices("GATEWAY_TOP_K", "top_k"),
    )
    max_output_tokens: int = Field(
        default=8192,
        ge=1,
        validation_alias=AliasChoices(
            "GATEWAY_MAX_OUTPUT_TOKENS", "max_output_tokens"
        ),
    )
    request_timeout: float = Field(
        default=300.0,
        validation_alias=AliasChoices("GATEWAY_TIMEOUT", "timeout"),
        ge=1,
    )

    attachments_max_size_bytes: int = Field(
        default=8 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "ATTACHMENTS_MAX_SIZE_BYTES",
            "attachments_max_size_bytes",
        ),
    )

    @property
    def is_password_protected(self) -> bool:
        return bool(self.access_secret and self.access_secret.get_secret_value())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
