"""Centralised application configuration and environment validation."""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, MutableMapping, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("settings")


_SECRET_FIELDS = {
    "REDIS_URL",
    "DATABASE_URL",
}

_STORE_BACKENDS = {"memory", "redis", "postgres"}


def _mask(value: Optional[str]) -> str:
    if not value:
        return ""
    text = str(value).strip()
    if len(text) <= 4:
        return text
    return f"***{text[-4:]}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = Field(default="prod")
    LOG_LEVEL: str = Field(default="INFO")
    LOG_JSON: bool = Field(default=True)
    MAX_IN_LOG_BODY: int = Field(default=2048, ge=256, le=65536)

    STORE_BACKEND: str = Field(default="memory")
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_PREFIX: str = Field(default="gacha:prod")
    DATABASE_URL: Optional[str] = Field(default=None)
    LOCK_TIMEOUT_SEC: float = Field(default=10.0, ge=0.1, le=300.0)

    POOL_SOURCE_URL: Optional[str] = Field(default=None)
    POOL_SOURCE_FILE: Optional[str] = Field(default=None)
    POOL_SEPARATOR: str = Field(default=":", min_length=1)
    POOL_FETCH_TIMEOUT: float = Field(default=15.0, ge=1.0, le=300.0)
    HTTP_RETRY_ATTEMPTS: int = Field(default=3, ge=1, le=10)

    STARTING_COINS: int = Field(default=500, ge=0)
    STREAK_DAY_REWARD: int = Field(default=50, ge=0)
    STREAK_CYCLE_DAYS: int = Field(default=7, ge=1, le=365)
    REFERRAL_REWARD: int = Field(default=100, ge=0)
    REFERRAL_INVITER_REWARD: int = Field(default=100, ge=0)
    TOKEN_FREEFORM_ENABLED: bool = Field(default=False)
    TOKEN_RANDOM_MIN: int = Field(default=10, ge=0)
    TOKEN_RANDOM_MAX: int = Field(default=100, ge=0)
    HISTORY_LIMIT: int = Field(default=20, ge=1, le=1000)

    @field_validator(
        "REDIS_URL",
        "DATABASE_URL",
        "POOL_SOURCE_URL",
        "POOL_SOURCE_FILE",
        mode="before",
    )
    def _strip_optional(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator(
        "LOG_LEVEL",
        mode="before",
    )
    def _normalize_level(cls, value: Any) -> str:
        if value is None:
            return "INFO"
        text = str(value).strip().upper()
        if text not in logging._nameToLevel:  # type: ignore[attr-defined]
            return "INFO"
        return text

    @field_validator(
        "STORE_BACKEND",
        mode="before",
    )
    def _normalize_backend(cls, value: Any) -> str:
        text = str(value or "memory").strip().lower()
        return text or "memory"

    @model_validator(mode="after")
    def _post_init(self) -> "Settings":
        if self.STORE_BACKEND not in _STORE_BACKENDS:
            msg = (
                f"STORE_BACKEND must be one of {sorted(_STORE_BACKENDS)}; "
                f"got '{self.STORE_BACKEND}'"
            )
            logger.error(msg)
            raise RuntimeError(msg)

        if self.STORE_BACKEND == "redis" and not self.REDIS_URL:
            msg = "Missing required environment variable: REDIS_URL"
            logger.error(msg)
            raise RuntimeError(msg)

        if self.STORE_BACKEND == "postgres" and not self.DATABASE_URL:
            msg = "Missing required environment variable: DATABASE_URL"
            logger.error(msg)
            raise RuntimeError(msg)

        if self.TOKEN_RANDOM_MAX < self.TOKEN_RANDOM_MIN:
            msg = "TOKEN_RANDOM_MAX must not be lower than TOKEN_RANDOM_MIN"
            logger.error(msg)
            raise RuntimeError(msg)

        self.REDIS_PREFIX = self.REDIS_PREFIX.strip().rstrip(":") or "gacha:prod"
        return self

    def configuration_summary(self) -> Mapping[str, Any]:
        keys = {
            "APP_ENV": self.APP_ENV,
            "STORE_BACKEND": self.STORE_BACKEND,
            "REDIS_PREFIX": self.REDIS_PREFIX,
            "POOL_SOURCE_URL": self.POOL_SOURCE_URL,
            "POOL_SOURCE_FILE": self.POOL_SOURCE_FILE,
            "STARTING_COINS": self.STARTING_COINS,
            "TOKEN_FREEFORM_ENABLED": self.TOKEN_FREEFORM_ENABLED,
        }
        for secret in sorted(_SECRET_FIELDS):
            value = getattr(self, secret, None)
            keys[secret] = _mask(value)
        return keys

    def critical_variables(self) -> Mapping[str, str]:
        data: MutableMapping[str, str] = {}
        for field in ("STORE_BACKEND", "REDIS_URL", "DATABASE_URL"):
            value = getattr(self, field, "") or ""
            data[field] = _mask(value) if field in _SECRET_FIELDS else str(value)
        return data


def _load_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:  # pragma: no cover - fail fast
        errors = []
        for entry in exc.errors():
            loc = "::".join(str(part) for part in entry.get("loc", ()))
            msg = entry.get("msg", "invalid value")
            errors.append(f"{loc}: {msg}")
        message = "Invalid configuration: " + ", ".join(errors)
        logger.error(message)
        raise RuntimeError(message) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    """Reload settings from the environment and update module globals."""

    global settings
    settings = _load_settings()
    return settings


def configuration_summary_json() -> str:
    return json.dumps(settings.configuration_summary(), ensure_ascii=False)


__all__ = [
    "Settings",
    "settings",
    "configuration_summary_json",
    "reload_settings",
]
