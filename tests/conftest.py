from __future__ import annotations

import random
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.settings import Settings
from gacha_service import GachaService
from kv_store import KeyValueStore
from pool_store import PoolStore


def make_pool_text(size: int) -> str:
    return "\n".join(f"user{index}@example.com:pass{index:04d}" for index in range(size))


class FakeClock:
    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def store() -> KeyValueStore:
    return KeyValueStore("memory", prefix="test")


@pytest.fixture
def pool_store(store: KeyValueStore) -> PoolStore:
    pool_store = PoolStore(store)
    pool_store.load(make_pool_text(20))
    return pool_store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def app_settings() -> Settings:
    return Settings(
        STORE_BACKEND="memory",
        STARTING_COINS=500,
        STREAK_DAY_REWARD=50,
        STREAK_CYCLE_DAYS=7,
        REFERRAL_REWARD=100,
        REFERRAL_INVITER_REWARD=100,
        TOKEN_FREEFORM_ENABLED=False,
        HISTORY_LIMIT=20,
    )


@pytest.fixture
def service(store, pool_store, app_settings, clock) -> GachaService:
    return GachaService(
        store,
        pool_store,
        settings=app_settings,
        token_codes={"WELCOME100": 100, "BONUS200": 200, "FREECOIN50": 50},
        clock=clock,
        rng=random.Random(7),
    )
