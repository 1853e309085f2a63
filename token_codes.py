"""Token code normalisation, configured token tables and admin issuing."""

from __future__ import annotations

import csv
import io
import json
import logging
import os
import random
import re
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from core.constants import (
    DEFAULT_TOKEN_CODES,
    TOKEN_ISSUE_MAX_COUNT,
    TOKEN_ISSUE_MAX_VALUE,
    TOKEN_ISSUE_MIN_COUNT,
    TOKEN_ISSUE_MIN_VALUE,
    TOKEN_RANDOM_PART_LENGTH,
)
from core.errors import InvalidRequest

log = logging.getLogger(__name__)

TOKEN_FORMAT_RE = re.compile(r"^[A-Z0-9]{4,32}$")
TOKEN_ALPHABET = string.digits + string.ascii_uppercase

_WHITESPACE_RE = re.compile(r"\s+", re.UNICODE)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    value: int


def normalize_token_code(code: Optional[str]) -> str:
    """Return the canonical form of a token code.

    All whitespace, zero-width spaces included, is removed and letters are
    upper-cased, so codes pasted from chat messages still match.
    """

    if not code:
        return ""
    text = _WHITESPACE_RE.sub("", str(code))
    text = text.replace("\u200b", "")
    return text.upper()


def validate_token_format(code: Optional[str]) -> str:
    normalized = normalize_token_code(code)
    if not TOKEN_FORMAT_RE.match(normalized):
        raise InvalidRequest(f"invalid token format: {code!r}", token=normalized)
    return normalized


def _parse_mapping_blob(blob: str, source: str) -> Dict[str, Any]:
    """Parse ``{"CODE": 10}`` JSON or ``CODE=10`` pairs split by newline, comma or semicolon."""

    text = (blob or "").strip()
    if not text:
        return {}

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict):
        return parsed

    result: Dict[str, Any] = {}
    for raw in re.split(r"[\n,;]+", text):
        entry = raw.strip()
        if not entry:
            continue
        for delimiter in ("=", ":"):
            if delimiter in entry:
                code, value = entry.split(delimiter, 1)
                break
        else:
            parts = entry.split()
            if len(parts) == 2:
                code, value = parts
            else:
                log.warning("Ignoring malformed token definition '%s' from %s", entry, source)
                continue
        result[code.strip()] = value.strip()
    return result


def _load_from_file(path: str) -> Dict[str, Any]:
    file_path = Path(path).expanduser()
    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        log.warning("Token codes file '%s' not found", file_path)
        return {}
    except OSError as exc:
        log.warning("Cannot read token codes file '%s': %s", file_path, exc)
        return {}
    return _parse_mapping_blob(content, f"file:{file_path}")


def load_token_codes(defaults: Optional[Dict[str, int]] = None) -> Dict[str, int]:
    """Fixed token table: defaults, then ``TOKEN_CODES_JSON``, ``TOKEN_CODES`` and ``TOKEN_CODES_FILE``.

    Later sources override earlier ones. Entries with an invalid code or a
    non-positive amount are skipped with a warning.
    """

    merged: Dict[str, int] = {}

    def _apply(mapping: Optional[Dict[str, Any]], source: str) -> None:
        if not mapping:
            return
        for raw_code, raw_value in mapping.items():
            normalized = normalize_token_code(raw_code)
            if not TOKEN_FORMAT_RE.match(normalized):
                log.warning("Ignoring token code %r from %s: invalid format", raw_code, source)
                continue
            try:
                amount = int(str(raw_value).strip())
            except (TypeError, ValueError):
                log.warning("Ignoring token code '%s' from %s: invalid amount %r", raw_code, source, raw_value)
                continue
            if amount <= 0:
                log.warning("Ignoring token code '%s' from %s: non-positive amount %s", raw_code, source, amount)
                continue
            merged[normalized] = amount

    _apply(DEFAULT_TOKEN_CODES if defaults is None else defaults, "defaults")

    env_json = os.getenv("TOKEN_CODES_JSON")
    if env_json:
        _apply(_parse_mapping_blob(env_json, "env:TOKEN_CODES_JSON"), "env:TOKEN_CODES_JSON")

    env_plain = os.getenv("TOKEN_CODES")
    if env_plain:
        _apply(_parse_mapping_blob(env_plain, "env:TOKEN_CODES"), "env:TOKEN_CODES")

    file_path = os.getenv("TOKEN_CODES_FILE")
    if file_path:
        _apply(_load_from_file(file_path), f"file:{file_path}")

    return merged


def generate_token_code(prefix: str = "", rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    suffix = "".join(rng.choice(TOKEN_ALPHABET) for _ in range(TOKEN_RANDOM_PART_LENGTH))
    return f"{normalize_token_code(prefix)}{suffix}"


def issue_tokens(
    prefix: str,
    count: int,
    value: int,
    *,
    rng: Optional[random.Random] = None,
) -> List[IssuedToken]:
    """Generate ``count`` distinct codes worth ``value`` coins each."""

    for name, number, low, high in (
        ("count", count, TOKEN_ISSUE_MIN_COUNT, TOKEN_ISSUE_MAX_COUNT),
        ("value", value, TOKEN_ISSUE_MIN_VALUE, TOKEN_ISSUE_MAX_VALUE),
    ):
        if isinstance(number, bool) or not isinstance(number, int) or not low <= number <= high:
            raise InvalidRequest(f"{name} must be between {low} and {high}, got {number!r}")

    prefix = normalize_token_code(prefix)
    if not re.fullmatch(r"[A-Z0-9]*", prefix):
        raise InvalidRequest(f"token prefix must be alphanumeric, got {prefix!r}")
    if len(prefix) + TOKEN_RANDOM_PART_LENGTH > 32:
        raise InvalidRequest(f"token prefix too long: {prefix!r}")

    rng = rng or random.SystemRandom()
    codes: Dict[str, IssuedToken] = {}
    while len(codes) < count:
        code = generate_token_code(prefix, rng)
        codes.setdefault(code, IssuedToken(code, value))
    return list(codes.values())


def tokens_csv(tokens: Iterable[IssuedToken]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["token", "value"])
    for item in tokens:
        writer.writerow([item.token, item.value])
    return buffer.getvalue()


__all__ = [
    "IssuedToken",
    "TOKEN_FORMAT_RE",
    "generate_token_code",
    "issue_tokens",
    "load_token_codes",
    "normalize_token_code",
    "tokens_csv",
    "validate_token_format",
]
