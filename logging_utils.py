"""Structured JSON logging with secret redaction."""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from core.settings import settings

MAX_IN_LOG_BODY = int(settings.MAX_IN_LOG_BODY)

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_JSON_ENABLED = bool(settings.LOG_JSON)
_DEFAULT_LEVEL = settings.LOG_LEVEL

_SECRET_SUFFIXES = ("_TOKEN", "_KEY", "_SECRET", "_PASSWORD")
_SECRET_ENV_KEYS = {"DATABASE_URL", "REDIS_URL", "POOL_SOURCE_URL"}
_SECRET_META_KEYS = {"secret", "password", "dsn"}


def _is_secret_env(name: str) -> bool:
    upper = name.upper()
    return upper.endswith(_SECRET_SUFFIXES) or upper in _SECRET_ENV_KEYS


_SECRET_VALUES_LOCK = threading.Lock()
_SECRET_VALUES = {value for name, value in os.environ.items() if value and _is_secret_env(name)}
# Pool record secrets; kept apart so an env refresh does not drop them.
_REGISTERED_SECRETS: set[str] = set()


def refresh_secret_cache() -> None:
    """Reload the cached secret values from the environment."""

    with _SECRET_VALUES_LOCK:
        _SECRET_VALUES.clear()
        for name, value in os.environ.items():
            if value and _is_secret_env(name):
                _SECRET_VALUES.add(value)
        _SECRET_VALUES.update(_REGISTERED_SECRETS)


def register_secrets(values: Iterable[str]) -> int:
    """Redact ``values`` from every subsequent log line; returns how many were added."""

    added = 0
    with _SECRET_VALUES_LOCK:
        for value in values:
            # Very short values would redact unrelated text.
            if not value or len(value) < 4 or value in _REGISTERED_SECRETS:
                continue
            _REGISTERED_SECRETS.add(value)
            _SECRET_VALUES.add(value)
            added += 1
    return added


def _truncate(value: str) -> str:
    if len(value) <= MAX_IN_LOG_BODY:
        return value
    return value[:MAX_IN_LOG_BODY] + "…(truncated)"


_TOKEN_QUERY_RE = re.compile(r"(token=)([^&\s]+)", re.IGNORECASE)


def _redact_text(value: str) -> str:
    if not value:
        return value
    with _SECRET_VALUES_LOCK:
        secrets = sorted(_SECRET_VALUES, key=len, reverse=True)
    for secret in secrets:
        if secret and secret in value:
            value = value.replace(secret, "***")
    value = _TOKEN_QUERY_RE.sub(r"\1***", value)
    return value


def _sanitize(value: Any) -> Any:
    if isinstance(value, str):
        return _truncate(_redact_text(value))
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="replace")
        return _truncate(_redact_text(text))
    if isinstance(value, Mapping):
        return {
            str(key): "***" if str(key).lower() in _SECRET_META_KEYS else _sanitize(val)
            for key, val in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [_sanitize(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """Format log records into JSON with structured metadata."""

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        message = _truncate(_redact_text(message))
        meta: dict[str, Any] = {}
        extra_meta = getattr(record, "meta", None)
        if isinstance(extra_meta, Mapping):
            meta.update(_sanitize(dict(extra_meta)))
        elif extra_meta is not None:
            meta["extra"] = _sanitize(extra_meta)

        meta.setdefault("logger", record.name)
        meta.setdefault("module", record.module)
        meta.setdefault("pid", os.getpid())

        if record.exc_info:
            meta["exc_info"] = _truncate(_redact_text(self.formatException(record.exc_info)))

        data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": message,
            "meta": meta,
        }
        return json.dumps(data, ensure_ascii=False, default=str)


class RedactingFormatter(logging.Formatter):
    """Plain-text formatter applying the same redaction as :class:`JsonFormatter`."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        meta = getattr(record, "meta", None)
        if meta is not None:
            text = f"{text} {json.dumps(_sanitize(meta), ensure_ascii=False, default=str)}"
        return _truncate(_redact_text(text))


_CONFIGURED = False
_CONFIG_LOCK = threading.Lock()


def _resolve_level(name: str | None) -> int:
    if not name:
        name = _DEFAULT_LEVEL
    normalized = str(name).strip().upper() or "INFO"
    return _LEVEL_MAP.get(normalized, logging.INFO)


def init_logging(app_name: str, level: str | None = None, *, json_logs: bool | None = None) -> None:
    """Configure root logging according to runtime configuration."""

    effective_level = _resolve_level(level)
    use_json = _JSON_ENABLED if json_logs is None else bool(json_logs)

    global _CONFIGURED
    with _CONFIG_LOCK:
        if not _CONFIGURED:
            handler = logging.StreamHandler()
            if use_json:
                handler.setFormatter(JsonFormatter())
            else:
                handler.setFormatter(
                    RedactingFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
                )
            root = logging.getLogger()
            root.handlers.clear()
            root.addHandler(handler)
            root.setLevel(effective_level)
            logging.captureWarnings(True)
            for noisy in ("urllib3", "requests", "psycopg", "psycopg.pool"):
                logging.getLogger(noisy).setLevel(logging.WARNING)
            _CONFIGURED = True
        else:
            logging.getLogger().setLevel(effective_level)

    logger = logging.getLogger(app_name)
    log_level = max(logging.INFO, effective_level)
    logger.log(
        log_level,
        "configuration summary",
        extra={"meta": settings.configuration_summary()},
    )
    logger.log(
        log_level,
        "configuration critical",
        extra={"meta": settings.critical_variables()},
    )


__all__ = [
    "JsonFormatter",
    "RedactingFormatter",
    "init_logging",
    "refresh_secret_cache",
    "register_secrets",
]
