import sys
import threading
from datetime import timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import gacha_service
from core.errors import GachaError, InvalidRequest, PersistenceUnavailable
from core.settings import Settings
from gacha_service import GachaService, build_service
from kv_store import KeyValueStore
from metrics import render_metrics
from pool_store import PoolStore


def test_login_grants_starting_balance_once(service):
    first = service.login("alice")
    assert first.ok is True
    assert first.balance == 500
    assert first.meta["created"] is True

    second = service.login("alice")
    assert second.ok is True
    assert second.balance == 500
    assert second.meta["created"] is False


def test_operations_require_login(service):
    result = service.claim_streak("ghost")
    assert result.ok is False
    assert result.error == "invalid_request"


def test_pull_gacha_debits_and_allocates(service, pool_store):
    service.login("alice")
    result = service.pull_gacha("alice", "rare")

    assert result.ok is True
    assert len(result.records) == 2
    assert result.balance == 400
    assert service.balance("alice") == 400
    assert len(pool_store.available_indices()) == 18

    history = service.history("alice")
    assert history[0]["kind"] == "gacha"
    assert {item["index"] for item in history[0]["records"]} == {r.index for r in result.records}


def test_pull_gacha_without_funds(service, pool_store):
    service.login("alice")
    result = service.pull_gacha("alice", "mythic")

    assert result.ok is False
    assert result.error == "insufficient_funds"
    assert service.balance("alice") == 500
    assert len(pool_store.available_indices()) == 20


def test_pull_gacha_refunds_when_pool_runs_out(store, app_settings, clock):
    pool_store = PoolStore(store)
    pool_store.load("a:1\nb:2")
    service = GachaService(store, pool_store, settings=app_settings, token_codes={}, clock=clock)
    service.login("alice")

    result = service.pull_gacha("alice", "epic")

    assert result.ok is False
    assert result.error == "insufficient_supply"
    assert service.balance("alice") == 500
    assert pool_store.available_indices() == {0, 1}


def test_unknown_tier(service):
    service.login("alice")
    result = service.pull_gacha("alice", "ultra")
    assert result.ok is False
    assert result.error == "invalid_request"


def test_concurrent_pulls_share_last_records(store, app_settings, clock):
    pool_store = PoolStore(store)
    pool_store.load("a:1\nb:2\nc:3")
    service = GachaService(store, pool_store, settings=app_settings, token_codes={}, clock=clock)
    service.login("alice")
    service.login("bob")

    barrier = threading.Barrier(2)
    results = {}

    def worker(account):
        barrier.wait()
        results[account] = service.pull_gacha(account, "rare")

    threads = [threading.Thread(target=worker, args=(name,)) for name in ("alice", "bob")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    oks = [result for result in results.values() if result.ok]
    failed = [result for result in results.values() if not result.ok]
    assert len(oks) == 1
    assert failed[0].error == "insufficient_supply"
    assert service.balance("alice") + service.balance("bob") == 500 + 400


def test_welcome_token_redeemable_once_globally(service):
    service.login("alice")
    service.login("bob")

    first = service.redeem_token("alice", "WELCOME100")
    assert first.ok is True
    assert first.amount == 100
    assert first.balance == 600

    again = service.redeem_token("alice", "welcome100")
    assert again.ok is False
    assert again.error == "already_redeemed"

    other = service.redeem_token("bob", "WELCOME100")
    assert other.ok is False
    assert other.error == "already_redeemed"
    assert service.balance("bob") == 500


def test_concurrent_token_redemption(service):
    accounts = [f"user{i}" for i in range(6)]
    for account in accounts:
        service.login(account)
    barrier = threading.Barrier(len(accounts))
    results = []

    def worker(account):
        barrier.wait()
        results.append(service.redeem_token(account, "BONUS200"))

    threads = [threading.Thread(target=worker, args=(account,)) for account in accounts]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.ok) == 1
    assert sum(service.balance(account) for account in accounts) == 6 * 500 + 200


def test_interrupted_token_redemption_completes_for_owner(service, store):
    service.login("alice")
    store.put_json(store.key("token", "claim", "FREECOIN50"), {"account_id": "alice", "amount": 50, "ts": 0})

    result = service.redeem_token("alice", "FREECOIN50")
    assert result.ok is True
    assert service.balance("alice") == 550


def test_unknown_token_is_rejected(service):
    service.login("alice")
    result = service.redeem_token("alice", "NOTATOKEN")
    assert result.ok is False
    assert result.error == "invalid_request"


def test_streak_day_three_pays_150_once(service, clock):
    service.login("alice")
    amounts = []
    for _ in range(3):
        amounts.append(service.claim_streak("alice").amount)
        clock.moment += timedelta(days=1)
    clock.moment -= timedelta(days=1)

    assert amounts == [50, 100, 150]

    repeat = service.claim_streak("alice")
    assert repeat.ok is False
    assert repeat.error == "already_claimed"
    assert service.balance("alice") == 500 + 300


def test_streak_resets_after_missed_day(service, clock):
    service.login("alice")
    service.claim_streak("alice")
    clock.moment += timedelta(days=2)
    result = service.claim_streak("alice")
    assert result.meta["day"] == 1
    assert result.amount == 50


def test_quest_completion_is_idempotent(service):
    service.login("alice")
    first = service.complete_quest("alice", "3")
    assert first.ok is True
    assert first.amount == 200

    second = service.complete_quest("alice", "3")
    assert second.ok is False
    assert second.error == "already_claimed"
    assert service.balance("alice") == 700


def test_cooldown_quest_repeats_next_window(service, clock):
    service.login("alice")
    assert service.complete_quest("alice", "4").ok is True
    assert service.complete_quest("alice", "4").ok is False

    board = {entry["id"]: entry for entry in service.quest_board("alice")}
    assert board["4"]["completed"] is True
    assert board["4"]["available_at"] is not None
    assert board["1"]["completed"] is False

    clock.moment += timedelta(minutes=15)
    assert service.complete_quest("alice", "4").ok is True
    assert service.balance("alice") == 600


def test_referral_code_is_stable(service):
    service.login("alice")
    code = service.referral_code("alice")
    assert service.referral_code("alice") == code


def test_referral_rewards_both_sides_once(service):
    service.login("alice")
    service.login("bob")
    service.login("carol")
    code = service.referral_code("alice")

    result = service.redeem_referral("bob", code.lower())
    assert result.ok is True
    assert service.balance("bob") == 600
    assert service.balance("alice") == 600

    repeat = service.redeem_referral("bob", code)
    assert repeat.ok is False
    assert repeat.error == "already_claimed"
    assert service.balance("alice") == 600

    carol_code = service.referral_code("carol")
    second_referrer = service.redeem_referral("bob", carol_code)
    assert second_referrer.ok is False
    assert second_referrer.error == "already_claimed"


def test_own_referral_code_is_rejected(service):
    service.login("alice")
    code = service.referral_code("alice")
    result = service.redeem_referral("alice", code)
    assert result.ok is False
    assert result.error == "invalid_request"
    assert service.balance("alice") == 500


def test_issued_tokens_can_be_redeemed(service):
    service.login("alice")
    tokens = service.issue_tokens("promo", 3, 250)
    assert len({token.token for token in tokens}) == 3
    assert all(token.token.startswith("PROMO") for token in tokens)

    result = service.redeem_token("alice", tokens[0].token)
    assert result.ok is True
    assert result.amount == 250


def test_history_is_bounded(store, pool_store, clock):
    settings = Settings(STORE_BACKEND="memory", HISTORY_LIMIT=2, STARTING_COINS=1000)
    service = GachaService(store, pool_store, settings=settings, token_codes={}, clock=clock)
    service.login("alice")
    for _ in range(3):
        assert service.pull_gacha("alice", "common").ok

    history = service.history("alice")
    assert len(history) == 2


def test_pool_stats_and_metrics(service):
    service.login("alice")
    service.pull_gacha("alice", "common")
    stats = service.pool_stats()
    assert (stats.total, stats.consumed, stats.available) == (20, 1, 19)

    payload = render_metrics().decode("utf-8")
    assert "gacha_pulls_total" in payload
    assert "pool_available" in payload


def test_build_service_loads_pool_text(app_settings):
    store = KeyValueStore("memory", prefix="build")
    service = build_service(app_settings, store=store, pool_text="a:secret-one\nb:secret-two")
    assert service.pool_stats().total == 2

    service.login("alice")
    result = service.pull_gacha("alice", "common")
    assert result.ok is True


def test_build_service_reads_file(tmp_path):
    source = tmp_path / "pool.txt"
    source.write_text("x:1\ny:2\nz:3\n", encoding="utf-8")
    settings = Settings(STORE_BACKEND="memory", POOL_SOURCE_FILE=str(source))
    service = build_service(settings, store=KeyValueStore("memory", prefix="file"))
    assert service.pool_stats().available == 3
    assert isinstance(service.ledger.balance("nobody"), int)


class FlakyStore(KeyValueStore):
    """Memory store whose reads and writes can be refused per key."""

    def __init__(self) -> None:
        super().__init__("memory", prefix="flaky")
        self.failing_writes = set()
        self.failing_reads = set()
        self.reads_fail_after_write = set()

    def get(self, key):
        if key in self.failing_reads:
            raise PersistenceUnavailable(f"read refused: {key}", key=key)
        return super().get(key)

    def put(self, key, value):
        if key in self.failing_writes:
            raise PersistenceUnavailable(f"write refused: {key}", key=key)
        super().put(key, value)
        if key in self.reads_fail_after_write:
            self.failing_reads.add(key)


def _flaky_service(app_settings, clock):
    store = FlakyStore()
    pool_store = PoolStore(store)
    pool_store.load("\n".join(f"user{i}:pw{i}" for i in range(10)))
    service = GachaService(store, pool_store, settings=app_settings, token_codes={"WELCOME100": 100}, clock=clock)
    return store, service


def test_pull_gacha_refunds_when_consumed_write_fails(app_settings, clock):
    store, service = _flaky_service(app_settings, clock)
    service.login("alice")
    store.failing_writes.add(store.key("pool", "consumed"))

    result = service.pull_gacha("alice", "rare")
    assert result.ok is False
    assert result.error == "persistence_unavailable"
    assert service.balance("alice") == 500
    assert service.pool_stats().consumed == 0

    store.failing_writes.clear()
    retry = service.pull_gacha("alice", "rare")
    assert retry.ok is True
    assert retry.balance == 400
    assert service.pool_stats().consumed == 2


def test_token_redemption_resumes_after_account_write_fails(app_settings, clock):
    store, service = _flaky_service(app_settings, clock)
    service.login("alice")
    service.login("bob")
    store.failing_writes.add(store.key("account", "alice"))

    first = service.redeem_token("alice", "WELCOME100")
    assert first.ok is False
    assert first.error == "persistence_unavailable"
    store.failing_writes.clear()
    assert service.balance("alice") == 500

    other = service.redeem_token("bob", "WELCOME100")
    assert other.ok is False
    assert other.error == "already_redeemed"
    assert service.balance("bob") == 500

    retry = service.redeem_token("alice", "WELCOME100")
    assert retry.ok is True
    assert retry.balance == 600


def test_claim_reports_balance_from_the_committed_grant(app_settings, clock):
    store, service = _flaky_service(app_settings, clock)
    service.login("alice")
    account_key = store.key("account", "alice")
    store.reads_fail_after_write.add(account_key)

    result = service.complete_quest("alice", "3")
    assert result.ok is True
    assert result.amount == 200
    assert result.balance == 700
    assert store.failing_reads == {account_key}


def test_invented_tokens_pay_nothing_by_default(store, pool_store, clock):
    service = GachaService(
        store,
        pool_store,
        settings=Settings(STORE_BACKEND="memory"),
        token_codes={"WELCOME100": 100},
        clock=clock,
    )
    service.login("alice")
    for i in range(5):
        for code in (f"MYTHIC{i:04d}", f"ZZZZ{i:04d}"):
            result = service.redeem_token("alice", code)
            assert result.ok is False
            assert result.error == "invalid_request"
    assert service.balance("alice") == 500


def test_referral_code_collisions_are_not_storage_errors(service, monkeypatch):
    monkeypatch.setattr(gacha_service, "generate_referral_code", lambda rng=None: "SAMECODE")
    service.login("alice")
    service.login("bob")
    assert service.referral_code("alice") == "SAMECODE"

    with pytest.raises(GachaError) as excinfo:
        service.referral_code("bob")
    assert not isinstance(excinfo.value, PersistenceUnavailable)
    assert excinfo.value.code == "gacha_error"


def test_balance_of_unknown_account_raises(service):
    with pytest.raises(InvalidRequest):
        service.balance("ghost")
