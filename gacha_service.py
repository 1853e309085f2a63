# -*- coding: utf-8 -*-
"""Caller-facing gacha and reward operations.

Every mutating operation returns a typed result instead of raising: a
:class:`core.errors.GachaError` is converted into ``ok=False`` with the
error's stable ``code``. Read-only queries raise the error directly.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import metrics
from allocator import Allocator
from core.constants import GRANT_REFERRAL_PREFIX, QUESTS, TIERS
from core.errors import (
    AlreadyClaimed,
    AlreadyRedeemed,
    GachaError,
    InvalidRequest,
    PersistenceUnavailable,
)
from core.settings import Settings
from kv_store import KeyValueStore, build_store
from ledger import Ledger
from logging_utils import register_secrets
from pool_store import PoolStats, PoolStore, Record, fetch_pool_source
from reward_rules import (
    Grant,
    generate_referral_code,
    previous_streak_key,
    quest_grant,
    referral_grant,
    referral_inviter_grant,
    streak_grant,
    token_grant,
)
from token_codes import IssuedToken, generate_token_code, issue_tokens, load_token_codes, normalize_token_code

log = logging.getLogger(__name__)

_REFERRAL_CODE_ATTEMPTS = 16


@dataclass
class AllocationResult:
    ok: bool
    tier: str
    records: List[Record] = field(default_factory=list)
    cost: int = 0
    balance: Optional[int] = None
    error: Optional[str] = None
    message: str = ""


@dataclass
class ClaimResult:
    ok: bool
    key: str = ""
    amount: int = 0
    balance: Optional[int] = None
    error: Optional[str] = None
    message: str = ""
    meta: Dict[str, Any] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GachaService:
    def __init__(
        self,
        store: KeyValueStore,
        pool_store: PoolStore,
        *,
        settings: Optional[Settings] = None,
        ledger: Optional[Ledger] = None,
        allocator: Optional[Allocator] = None,
        token_codes: Optional[Mapping[str, int]] = None,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        if settings is None:
            from core.settings import settings as current_settings

            settings = current_settings
        self._settings = settings
        self._store = store
        self._pool_store = pool_store
        self._ledger = ledger or Ledger(store)
        self._allocator = allocator or Allocator(pool_store, rng=rng)
        self._token_codes = dict(load_token_codes() if token_codes is None else token_codes)
        self._clock = clock
        self._rng = rng or random.SystemRandom()

    @property
    def ledger(self) -> Ledger:
        return self._ledger

    # ------------------------------------------------------------------
    #   Helpers
    # ------------------------------------------------------------------
    def _fail(self, op: str, account_id: Any, exc: GachaError) -> None:
        level = logging.ERROR if isinstance(exc, (InvalidRequest, PersistenceUnavailable)) else logging.WARNING
        log.log(
            level,
            "gacha.op_failed",
            extra={"meta": {"op": op, "user": account_id, "error": exc.code, "message": str(exc), **exc.details}},
        )

    def _require_account(self, account_id: Any) -> str:
        account_id = str(account_id or "").strip()
        if not self._ledger.exists(account_id):
            raise InvalidRequest(f"unknown account: {account_id!r}; log in first", user=account_id)
        return account_id

    def _claim(self, op: str, account_id: Any, action: Callable[[str], Tuple[Grant, int]]) -> ClaimResult:
        started = time.monotonic()
        kind = op.replace("claim_", "").replace("complete_", "").replace("redeem_", "")
        try:
            account = self._require_account(account_id)
            grant, balance = action(account)
        except GachaError as exc:
            self._fail(op, account_id, exc)
            metrics.record_grant(kind, exc.code)
            return ClaimResult(False, key=str(exc.details.get("key", "")), error=exc.code, message=str(exc))
        finally:
            metrics.observe_operation(op, time.monotonic() - started)

        metrics.record_grant(kind, "ok", grant.amount)
        return ClaimResult(
            True,
            key=grant.key,
            amount=grant.amount,
            balance=balance,
            meta=dict(grant.meta),
        )

    def _apply_once(self, account_id: str, grant: Grant, error: type = AlreadyClaimed) -> Tuple[Grant, int]:
        result = self._ledger.apply_grant(account_id, grant.key, grant.amount, meta=grant.meta)
        if not result.applied:
            raise error(grant.key)
        return grant, result.balance

    def _history_key(self, account_id: str) -> str:
        return self._store.key("history", account_id)

    def _append_history(self, account_id: str, entry: Dict[str, Any]) -> None:
        try:
            with self._ledger.lock(account_id):
                key = self._history_key(account_id)
                items = self._store.get_json(key, [])
                items.insert(0, entry)
                self._store.put_json(key, items[: self._settings.HISTORY_LIMIT])
        except PersistenceUnavailable as exc:
            # History is informational; the operation itself already committed.
            log.error("gacha.history_write_failed", extra={"meta": {"user": account_id, "error": str(exc)}})

    # ------------------------------------------------------------------
    #   Accounts
    # ------------------------------------------------------------------
    def login(self, account_id: Any) -> ClaimResult:
        """Create the account on first login with the starting balance."""

        try:
            result = self._ledger.ensure_account(account_id, self._settings.STARTING_COINS)
        except GachaError as exc:
            self._fail("login", account_id, exc)
            return ClaimResult(False, error=exc.code, message=str(exc))
        if result.applied:
            log.info("gacha.account_created", extra={"meta": {"user": account_id, "balance": result.balance}})
        return ClaimResult(
            True,
            key=result.op_id,
            amount=result.balance - result.old_balance,
            balance=result.balance,
            meta={"created": result.applied},
        )

    def balance(self, account_id: Any) -> int:
        return self._ledger.balance(self._require_account(account_id))

    def history(self, account_id: Any) -> List[Dict[str, Any]]:
        account = self._require_account(account_id)
        return list(self._store.get_json(self._history_key(account), []))

    # ------------------------------------------------------------------
    #   Gacha
    # ------------------------------------------------------------------
    def pull_gacha(self, account_id: Any, tier: str) -> AllocationResult:
        started = time.monotonic()
        tier_name = str(tier or "").strip().lower()
        try:
            definition = TIERS.get(tier_name)
            if definition is None:
                raise InvalidRequest(f"unknown tier: {tier!r}", tier=tier_name)
            account = self._require_account(account_id)
            records, debit = self._ledger.purchase(
                account,
                definition.price,
                lambda: self._allocator.allocate(definition.count),
                reason=f"gacha_{tier_name}",
                meta={"tier": tier_name},
            )
        except GachaError as exc:
            self._fail("pull_gacha", account_id, exc)
            metrics.record_pull(tier_name if tier_name in TIERS else "unknown", exc.code)
            return AllocationResult(False, tier_name, error=exc.code, message=str(exc))
        finally:
            metrics.observe_operation("pull_gacha", time.monotonic() - started)

        metrics.record_pull(tier_name, "ok", len(records))
        self._append_history(
            account,
            {
                "kind": "gacha",
                "tier": tier_name,
                "cost": definition.price,
                "ts": int(time.time()),
                "records": [record.as_dict() for record in records],
            },
        )
        log.info(
            "gacha.pulled",
            extra={"meta": {"user": account, "tier": tier_name, "indices": [r.index for r in records]}},
        )
        return AllocationResult(True, tier_name, records=records, cost=definition.price, balance=debit.balance)

    def pool_stats(self) -> PoolStats:
        stats = self._pool_store.stats()
        metrics.set_pool_available(stats.available)
        return stats

    # ------------------------------------------------------------------
    #   Rewards
    # ------------------------------------------------------------------
    def claim_streak(self, account_id: Any) -> ClaimResult:
        def action(account: str) -> Tuple[Grant, int]:
            today = self._clock().date()
            with self._ledger.lock(account):
                previous = self._ledger.grant_details(account, previous_streak_key(today))
                previous_day = (previous or {}).get("meta", {}).get("day")
                grant = streak_grant(
                    today,
                    previous_day,
                    per_day=self._settings.STREAK_DAY_REWARD,
                    cycle=self._settings.STREAK_CYCLE_DAYS,
                )
                return self._apply_once(account, grant)

        return self._claim("claim_streak", account_id, action)

    def complete_quest(self, account_id: Any, quest_id: Any) -> ClaimResult:
        def action(account: str) -> Tuple[Grant, int]:
            return self._apply_once(account, quest_grant(quest_id, self._clock()))

        return self._claim("complete_quest", account_id, action)

    def quest_board(self, account_id: Any) -> List[Dict[str, Any]]:
        account = self._require_account(account_id)
        now = self._clock()
        grants = self._ledger.grants(account)
        board = []
        for quest in QUESTS.values():
            grant = quest_grant(quest.id, now)
            entry: Dict[str, Any] = {
                "id": quest.id,
                "kind": quest.kind,
                "title": quest.title,
                "description": quest.description,
                "reward": quest.reward,
                "completed": grant.key in grants,
            }
            if quest.cooldown_minutes:
                window_seconds = quest.cooldown_minutes * 60
                entry["cooldown_minutes"] = quest.cooldown_minutes
                entry["available_at"] = (grant.meta["window"] + 1) * window_seconds if entry["completed"] else None
            board.append(entry)
        return board

    def referral_code(self, account_id: Any) -> str:
        """Return the account's referral code, generating it on first request."""

        account = self._require_account(account_id)
        owner_key = self._store.key("referral", "owner", account)
        with self._store.lock("referral", "codes"):
            existing = self._store.get_json(owner_key)
            if existing:
                return existing
            for _ in range(_REFERRAL_CODE_ATTEMPTS):
                code = generate_referral_code(self._rng)
                code_key = self._store.key("referral", "code", code)
                if self._store.get(code_key) is None:
                    break
            else:
                raise GachaError("could not allocate a unique referral code", user=account)
            self._store.put_json(code_key, account)
            self._store.put_json(owner_key, code)
        log.info("gacha.referral_code_created", extra={"meta": {"user": account, "code": code}})
        return code

    def redeem_referral(self, account_id: Any, code: str) -> ClaimResult:
        def action(account: str) -> Tuple[Grant, int]:
            normalized = normalize_token_code(code)
            owner = self._store.get_json(self._store.key("referral", "code", normalized)) if normalized else None
            if not owner:
                raise InvalidRequest(f"unknown referral code: {code!r}")
            if owner == account:
                raise InvalidRequest("cannot redeem your own referral code")

            grant = referral_grant(normalized, self._settings.REFERRAL_REWARD)
            inviter = referral_inviter_grant(account, self._settings.REFERRAL_INVITER_REWARD)
            with self._store.lock("referral", account):
                with self._ledger.lock(account):
                    used = [
                        key
                        for key in self._ledger.grants(account)
                        if key.startswith(f"{GRANT_REFERRAL_PREFIX}:") and not key.startswith(f"{GRANT_REFERRAL_PREFIX}:invitee:")
                    ]
                    if used and used != [grant.key]:
                        raise AlreadyClaimed(used[0], "account was already referred")
                    result = self._ledger.apply_grant(account, grant.key, grant.amount, meta=grant.meta)
                # Also completes an inviter bonus left unpaid by an interrupted earlier call.
                self._ledger.grant(owner, inviter.key, inviter.amount, meta=inviter.meta)
            if not result.applied:
                raise AlreadyClaimed(grant.key)
            return grant, result.balance

        return self._claim("redeem_referral", account_id, action)

    def _issued_tokens_key(self) -> str:
        return self._store.key("tokens", "issued")

    def redeem_token(self, account_id: Any, code: str) -> ClaimResult:
        def action(account: str) -> Tuple[Grant, int]:
            grant = token_grant(
                code,
                fixed=self._token_codes,
                issued=self._store.get_json(self._issued_tokens_key(), {}),
                freeform_enabled=self._settings.TOKEN_FREEFORM_ENABLED,
                random_min=self._settings.TOKEN_RANDOM_MIN,
                random_max=self._settings.TOKEN_RANDOM_MAX,
            )
            token = grant.meta["token"]
            claim_key = self._store.key("token", "claim", token)
            with self._store.lock("tokens"):
                claim = self._store.get_json(claim_key)
                if claim and claim.get("account_id") != account:
                    raise AlreadyRedeemed(grant.key)
                if claim is None:
                    self._store.put_json(
                        claim_key,
                        {"account_id": account, "amount": grant.amount, "ts": int(time.time())},
                    )
                # A claim without the matching grant is finished here on retry.
                _, balance = self._apply_once(account, grant, AlreadyRedeemed)

            self._append_history(
                account,
                {"kind": "token", "token": token, "amount": grant.amount, "ts": int(time.time())},
            )
            return grant, balance

        return self._claim("redeem_token", account_id, action)

    def issue_tokens(self, prefix: str, count: int, value: int) -> List[IssuedToken]:
        """Create redeemable token codes and persist their values."""

        candidates = issue_tokens(prefix, count, value, rng=self._rng)
        with self._store.lock("tokens"):
            issued: Dict[str, int] = self._store.get_json(self._issued_tokens_key(), {})
            fresh: List[IssuedToken] = []
            while len(fresh) < count:
                item = candidates.pop() if candidates else IssuedToken(generate_token_code(prefix, self._rng), value)
                if item.token in issued or item.token in self._token_codes:
                    continue
                issued[item.token] = item.value
                fresh.append(item)
            self._store.put_json(self._issued_tokens_key(), issued)
        log.info("gacha.tokens_issued", extra={"meta": {"count": len(fresh), "value": value, "prefix": prefix}})
        return fresh


def build_service(
    settings: Optional[Settings] = None,
    *,
    store: Optional[KeyValueStore] = None,
    pool_text: Optional[str] = None,
) -> GachaService:
    """Wire store, pool and ledger from configuration and load the pool source."""

    if settings is None:
        from core.settings import settings as current_settings

        settings = current_settings

    store = store or build_store(settings)
    store.start()
    if pool_text is None:
        pool_text = fetch_pool_source(
            url=settings.POOL_SOURCE_URL,
            path=settings.POOL_SOURCE_FILE,
            timeout=settings.POOL_FETCH_TIMEOUT,
            attempts=settings.HTTP_RETRY_ATTEMPTS,
        )
    pool_store = PoolStore(store, separator=settings.POOL_SEPARATOR)
    pool = pool_store.load(pool_text)
    register_secrets(record.secret for record in pool.records())

    service = GachaService(store, pool_store, settings=settings)
    stats = service.pool_stats()
    log.info(
        "gacha.ready",
        extra={"meta": {"backend": store.backend_name, "total": stats.total, "available": stats.available}},
    )
    return service


__all__ = ["AllocationResult", "ClaimResult", "GachaService", "build_service"]
