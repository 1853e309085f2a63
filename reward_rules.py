"""Stateless reward policies returning the grant key and amount for each reward type."""

from __future__ import annotations

import hashlib
import random
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from core.constants import (
    DEFAULT_TOKEN_CODES,
    GRANT_QUEST_PREFIX,
    GRANT_REFERRAL_PREFIX,
    GRANT_STREAK_PREFIX,
    GRANT_TOKEN_PREFIX,
    QUESTS,
    REFERRAL_CODE_LENGTH,
)
from core.errors import InvalidRequest
from token_codes import TOKEN_ALPHABET, validate_token_format


@dataclass(frozen=True)
class Grant:
    key: str
    amount: int
    meta: Dict[str, Any] = field(default_factory=dict)


def streak_key(day: date) -> str:
    return f"{GRANT_STREAK_PREFIX}:{day.isoformat()}"


def previous_streak_key(day: date) -> str:
    return streak_key(day - timedelta(days=1))


def streak_grant(
    today: date,
    previous_day: Optional[int] = None,
    *,
    per_day: int = 50,
    cycle: int = 7,
) -> Grant:
    """Grant for claiming on ``today``.

    ``previous_day`` is the streak day recorded under yesterday's key, or
    ``None`` when yesterday was not claimed and the streak restarts at 1.
    After day ``cycle`` the streak wraps back to day 1.
    """

    if cycle < 1:
        raise InvalidRequest(f"streak cycle must be positive, got {cycle}")
    day_number = 1 if not previous_day else previous_day % cycle + 1
    return Grant(streak_key(today), day_number * per_day, {"day": day_number, "date": today.isoformat()})


def quest_grant(quest_id: Any, now: Optional[datetime] = None) -> Grant:
    quest = QUESTS.get(str(quest_id).strip())
    if quest is None:
        raise InvalidRequest(f"unknown quest: {quest_id!r}", quest=str(quest_id))

    meta: Dict[str, Any] = {"quest": quest.id, "kind": quest.kind}
    if not quest.cooldown_minutes:
        return Grant(f"{GRANT_QUEST_PREFIX}:{quest.id}", quest.reward, meta)

    # Repeatable quests are keyed by the cooldown window the claim falls in.
    moment = now or datetime.now(timezone.utc)
    window = int(moment.timestamp() // (quest.cooldown_minutes * 60))
    meta["window"] = window
    return Grant(f"{GRANT_QUEST_PREFIX}:{quest.id}:{window}", quest.reward, meta)


def referral_grant(code: str, amount: int) -> Grant:
    return Grant(f"{GRANT_REFERRAL_PREFIX}:{code}", amount, {"code": code})


def referral_inviter_grant(invitee_id: str, amount: int) -> Grant:
    return Grant(f"{GRANT_REFERRAL_PREFIX}:invitee:{invitee_id}", amount, {"invitee": invitee_id})


def generate_referral_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(TOKEN_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))


def _freeform_amount(code: str, low: int, high: int) -> int:
    seed = int.from_bytes(hashlib.sha256(code.encode("utf-8")).digest()[:8], "big")
    return random.Random(seed).randint(low, high)


def token_grant(
    code: str,
    *,
    fixed: Optional[Mapping[str, int]] = None,
    issued: Optional[Mapping[str, int]] = None,
    freeform_enabled: bool = False,
    random_min: int = 10,
    random_max: int = 100,
) -> Grant:
    """Value a token code.

    Lookup order is the fixed table, admin-issued codes and finally, when
    enabled, a deterministic pseudo-random amount derived from the code
    itself. Anything else is rejected.
    """

    normalized = validate_token_format(code)
    key = f"{GRANT_TOKEN_PREFIX}:{normalized}"
    table = DEFAULT_TOKEN_CODES if fixed is None else fixed

    if normalized in table:
        return Grant(key, int(table[normalized]), {"token": normalized, "source": "fixed"})
    if issued and normalized in issued:
        return Grant(key, int(issued[normalized]), {"token": normalized, "source": "issued"})
    if freeform_enabled:
        amount = _freeform_amount(normalized, random_min, random_max)
        return Grant(key, amount, {"token": normalized, "source": "freeform"})
    raise InvalidRequest(f"unknown token: {normalized}", token=normalized)


__all__ = [
    "Grant",
    "generate_referral_code",
    "previous_streak_key",
    "quest_grant",
    "referral_grant",
    "referral_inviter_grant",
    "streak_grant",
    "streak_key",
    "token_grant",
]
