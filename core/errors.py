"""Typed failures raised by the pool, ledger and reward components."""

from __future__ import annotations

from typing import Any, Dict, Optional


class GachaError(RuntimeError):
    """Base class for every failure surfaced to callers as a typed result."""

    code = "gacha_error"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.code)
        self.details: Dict[str, Any] = dict(details)


class InsufficientFunds(GachaError):
    """Raised when a debit would make the balance negative."""

    code = "insufficient_funds"

    def __init__(self, balance: int, required: int):
        super().__init__(
            f"insufficient balance: have {balance}, need {required}",
            balance=balance,
            required=required,
        )
        self.balance = balance
        self.required = required


class InsufficientSupply(GachaError):
    """Raised when the pool cannot satisfy the requested count."""

    code = "insufficient_supply"

    def __init__(self, available: int, requested: int):
        super().__init__(
            f"pool exhausted: {available} available, {requested} requested",
            available=available,
            requested=requested,
        )
        self.available = available
        self.requested = requested


class AlreadyClaimed(GachaError):
    """Grant key already satisfied for the account."""

    code = "already_claimed"

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(message or f"already claimed: {key}", key=key)
        self.key = key


class AlreadyRedeemed(AlreadyClaimed):
    """Token code already consumed, by this or another account."""

    code = "already_redeemed"

    def __init__(self, key: str):
        super().__init__(key, f"already redeemed: {key}")


class InvalidRequest(GachaError):
    code = "invalid_request"


class MalformedRecord(GachaError):
    """A pool source line could not be parsed into a record."""

    code = "malformed_record"

    def __init__(self, line_no: int, reason: str):
        super().__init__(f"line {line_no}: {reason}", line_no=line_no)
        self.line_no = line_no
        self.reason = reason


class PersistenceUnavailable(GachaError):
    """The durable store could not be reached; nothing was applied."""

    code = "persistence_unavailable"


class PoolSourceUnavailable(GachaError):
    code = "pool_source_unavailable"


__all__ = [
    "AlreadyClaimed",
    "AlreadyRedeemed",
    "GachaError",
    "InsufficientFunds",
    "InsufficientSupply",
    "InvalidRequest",
    "MalformedRecord",
    "PersistenceUnavailable",
    "PoolSourceUnavailable",
]
