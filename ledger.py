# -*- coding: utf-8 -*-
"""Persistent ledger of account balances and satisfied grant keys."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from core.constants import GRANT_SIGNUP
from core.errors import InsufficientFunds, InvalidRequest
from kv_store import KeyValueStore

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LedgerOpResult:
    """Result of a balance operation."""

    applied: bool
    balance: int
    op_id: str
    reason: str
    old_balance: int
    duplicate: bool = False


class _LedgerHelpers:
    """Validation and logging shared by ledger operations."""

    @staticmethod
    def _check_account(account_id: Any) -> str:
        text = str(account_id or "").strip()
        if not text:
            raise InvalidRequest("account id must be a non-empty string")
        return text

    @staticmethod
    def _check_amount(amount: Any) -> int:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidRequest(f"amount must be an integer, got {amount!r}")
        if amount < 0:
            raise InvalidRequest(f"amount must be non-negative, got {amount}")
        return amount

    @staticmethod
    def _log_operation(
        op_type: str,
        account_id: str,
        op_id: str,
        amount: int,
        reason: str,
        old_balance: int,
        new_balance: int,
        meta: Optional[Dict[str, Any]],
    ) -> None:
        try:
            meta_repr = json.dumps(meta or {}, ensure_ascii=False, sort_keys=True)
        except (TypeError, ValueError):
            meta_repr = "{}"
        log.info(
            "ledger %s user=%s op_id=%s amount=%s reason=%s old=%s new=%s meta=%s",
            op_type,
            account_id,
            op_id,
            amount,
            reason,
            old_balance,
            new_balance,
            meta_repr,
        )


class Ledger(_LedgerHelpers):
    """Balances and at-most-once grants, one store key per account.

    Balance and grant set live in the same value so a grant is recorded and
    paid by a single write. Every mutation runs under the account's lock.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    #   Internal helpers
    # ------------------------------------------------------------------
    def _account_key(self, account_id: str) -> str:
        return self._store.key("account", account_id)

    def _load(self, account_id: str) -> Dict[str, Any]:
        state = self._store.get_json(self._account_key(account_id))
        if not isinstance(state, dict):
            return {"balance": 0, "grants": {}, "created_at": None}
        state.setdefault("balance", 0)
        state.setdefault("grants", {})
        return state

    def _save(self, account_id: str, state: Dict[str, Any]) -> None:
        if state.get("created_at") is None:
            state["created_at"] = int(time.time())
        self._store.put_json(self._account_key(account_id), state)

    def lock(self, account_id: str):
        return self._store.lock("account", account_id)

    # ------------------------------------------------------------------
    #   Public API
    # ------------------------------------------------------------------
    def exists(self, account_id: str) -> bool:
        account_id = self._check_account(account_id)
        return self._store.get(self._account_key(account_id)) is not None

    def balance(self, account_id: str) -> int:
        account_id = self._check_account(account_id)
        return int(self._load(account_id)["balance"])

    def grants(self, account_id: str) -> Dict[str, Dict[str, Any]]:
        account_id = self._check_account(account_id)
        return dict(self._load(account_id)["grants"])

    def grant_details(self, account_id: str, key: str) -> Optional[Dict[str, Any]]:
        return self.grants(account_id).get(key)

    def has_grant(self, account_id: str, key: str) -> bool:
        return self.grant_details(account_id, key) is not None

    def credit(
        self,
        account_id: str,
        amount: int,
        reason: str = "credit",
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        account_id = self._check_account(account_id)
        amount = self._check_amount(amount)
        op_id = f"credit:{account_id}:{time.time_ns()}"
        with self.lock(account_id):
            state = self._load(account_id)
            old_balance = int(state["balance"])
            new_balance = old_balance + amount
            state["balance"] = new_balance
            self._save(account_id, state)

        self._log_operation("credit", account_id, op_id, amount, reason, old_balance, new_balance, meta)
        return LedgerOpResult(True, new_balance, op_id, reason, old_balance)

    def debit(
        self,
        account_id: str,
        amount: int,
        reason: str = "debit",
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        account_id = self._check_account(account_id)
        amount = self._check_amount(amount)
        op_id = f"debit:{account_id}:{time.time_ns()}"
        with self.lock(account_id):
            state = self._load(account_id)
            old_balance = int(state["balance"])
            if old_balance < amount:
                raise InsufficientFunds(old_balance, amount)
            new_balance = old_balance - amount
            state["balance"] = new_balance
            self._save(account_id, state)

        self._log_operation("debit", account_id, op_id, amount, reason, old_balance, new_balance, meta)
        return LedgerOpResult(True, new_balance, op_id, reason, old_balance)

    def apply_grant(
        self,
        account_id: str,
        key: str,
        amount: int,
        reason: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerOpResult:
        """Credit ``amount`` once per ``(account_id, key)``."""

        account_id = self._check_account(account_id)
        amount = self._check_amount(amount)
        key = str(key or "").strip()
        if not key:
            raise InvalidRequest("grant key must be a non-empty string")
        reason = reason or key.split(":", 1)[0]

        with self.lock(account_id):
            state = self._load(account_id)
            old_balance = int(state["balance"])
            if key in state["grants"]:
                log.info("ledger.grant.duplicate", extra={"meta": {"user": account_id, "key": key}})
                return LedgerOpResult(False, old_balance, key, reason, old_balance, duplicate=True)

            new_balance = old_balance + amount
            state["balance"] = new_balance
            state["grants"][key] = {
                "amount": amount,
                "ts": int(time.time()),
                "meta": dict(meta or {}),
            }
            self._save(account_id, state)

        self._log_operation("grant", account_id, key, amount, reason, old_balance, new_balance, meta)
        return LedgerOpResult(True, new_balance, key, reason, old_balance)

    def grant(self, account_id: str, key: str, amount: int, **kwargs: Any) -> bool:
        return self.apply_grant(account_id, key, amount, **kwargs).applied

    def ensure_account(self, account_id: str, starting_balance: int = 0) -> LedgerOpResult:
        """Create the account on first sight, paying the signup bonus once."""

        return self.apply_grant(account_id, GRANT_SIGNUP, starting_balance, reason="signup_bonus")

    def purchase(
        self,
        account_id: str,
        cost: int,
        produce: Callable[[], T],
        reason: str = "purchase",
        meta: Optional[Dict[str, Any]] = None,
    ) -> Tuple[T, LedgerOpResult]:
        """Debit ``cost`` then run ``produce``; refund if ``produce`` fails.

        ``produce`` never runs when the debit is rejected.
        """

        debit_result = self.debit(account_id, cost, reason, meta)
        try:
            produced = produce()
        except Exception as exc:
            log.warning(
                "ledger.purchase.rollback",
                extra={"meta": {"user": account_id, "cost": cost, "reason": reason, "error": str(exc)}},
            )
            self.credit(account_id, cost, f"{reason}_refund", meta)
            raise
        return produced, debit_result


__all__ = ["Ledger", "LedgerOpResult"]
