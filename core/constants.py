"""Shared constants for gacha tiers, quests, tokens and grant keys."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Tier:
    name: str
    price: int
    count: int
    # Display-only odds; they do not influence which records are drawn.
    chance: float


@dataclass(frozen=True)
class Quest:
    id: str
    kind: str
    title: str
    description: str
    reward: int
    cooldown_minutes: Optional[int] = None


TIERS: Dict[str, Tier] = {
    "common": Tier("common", price=50, count=1, chance=20.0),
    "rare": Tier("rare", price=100, count=2, chance=10.0),
    "epic": Tier("epic", price=200, count=3, chance=5.0),
    "legendary": Tier("legendary", price=500, count=5, chance=1.0),
    "mythic": Tier("mythic", price=1000, count=10, chance=0.1),
}

QUESTS: Dict[str, Quest] = {
    "1": Quest("1", "social", "Follow on TikTok", "Follow our TikTok channel to earn coins", 100),
    "2": Quest("2", "social", "Follow on Instagram", "Follow our Instagram page to earn coins", 150),
    "3": Quest("3", "content", "Subscribe on YouTube", "Subscribe to our YouTube channel to earn coins", 200),
    "4": Quest("4", "ad", "Watch an Ad", "Watch a short advertisement to earn coins", 50, cooldown_minutes=15),
}

DEFAULT_TOKEN_CODES: Dict[str, int] = {
    "WELCOME100": 100,
    "BONUS200": 200,
    "FREECOIN50": 50,
}

TOKEN_ISSUE_MIN_COUNT = 1
TOKEN_ISSUE_MAX_COUNT = 50
TOKEN_ISSUE_MIN_VALUE = 10
TOKEN_ISSUE_MAX_VALUE = 1000
TOKEN_RANDOM_PART_LENGTH = 8

REFERRAL_CODE_LENGTH = 8

GRANT_SIGNUP = "signup"
GRANT_STREAK_PREFIX = "streak"
GRANT_QUEST_PREFIX = "quest"
GRANT_REFERRAL_PREFIX = "referral"
GRANT_TOKEN_PREFIX = "token"

__all__ = [
    "DEFAULT_TOKEN_CODES",
    "GRANT_QUEST_PREFIX",
    "GRANT_REFERRAL_PREFIX",
    "GRANT_SIGNUP",
    "GRANT_STREAK_PREFIX",
    "GRANT_TOKEN_PREFIX",
    "QUESTS",
    "Quest",
    "REFERRAL_CODE_LENGTH",
    "TIERS",
    "TOKEN_ISSUE_MAX_COUNT",
    "TOKEN_ISSUE_MAX_VALUE",
    "TOKEN_ISSUE_MIN_COUNT",
    "TOKEN_ISSUE_MIN_VALUE",
    "TOKEN_RANDOM_PART_LENGTH",
    "Tier",
]
