import logging
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError, ResponseError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.errors import PersistenceUnavailable
from kv_store import KeyValueStore, build_store


class FakeRedisLock:
    def __init__(self, client: "FakeRedis", name: str) -> None:
        self.client = client
        self.name = name

    def acquire(self) -> bool:
        if self.name in self.client.held:
            return False
        self.client.held.add(self.name)
        self.client.lock_names.append(self.name)
        return True

    def release(self) -> None:
        self.client.held.discard(self.name)
        if self.client.lose_locks:
            raise LockError("Cannot release a lock that's no longer owned")


class FakeRedis:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.held: set = set()
        self.lock_names: list = []
        self.fail_next: Optional[Exception] = None
        self.lose_locks = False

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc

    def get(self, key):
        self._maybe_fail()
        return self.data.get(key)

    def set(self, key, value):
        self._maybe_fail()
        self.data[key] = value
        return True

    def ping(self):
        return True

    def close(self):
        return None

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeRedisLock(self, name)


def test_memory_store_roundtrip_and_prefix():
    store = KeyValueStore("memory", prefix="app:")
    key = store.key("account", "alice")
    assert key == "app:account:alice"
    assert store.get(key) is None

    store.put_json(key, {"balance": 5})
    assert store.get_json(key) == {"balance": 5}
    assert store.get_json(store.key("missing"), default=[]) == []


def test_corrupt_json_is_reported():
    store = KeyValueStore("memory")
    store.put("bad", b"{not json")
    with pytest.raises(PersistenceUnavailable):
        store.get_json("bad")


def test_lock_is_reentrant_per_thread():
    store = KeyValueStore("memory")
    with store.lock("pool"):
        with store.lock("pool"):
            store.put("inside", b"1")
    assert store.get("inside") == b"1"


def test_lock_serializes_threads():
    store = KeyValueStore("memory")

    def worker():
        for _ in range(200):
            with store.lock("counter"):
                current = store.get_json("counter", 0)
                store.put_json("counter", current + 1)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get_json("counter") == 800


def test_memory_backend_can_be_forbidden(monkeypatch):
    monkeypatch.setenv("FORBID_MEMORY_DB", "1")
    with pytest.raises(RuntimeError):
        KeyValueStore("memory")


def test_unknown_backend():
    with pytest.raises(RuntimeError):
        KeyValueStore("sqlite")


def test_postgres_backend_requires_dsn():
    with pytest.raises(RuntimeError):
        KeyValueStore("postgres")


def test_redis_backend_uses_client():
    client = FakeRedis()
    store = KeyValueStore("redis", prefix="gacha:test", client=client)
    assert store.backend_name == "redis"

    store.put_json(store.key("account", "bob"), {"balance": 1})
    assert client.data["gacha:test:account:bob"] == b'{"balance": 1}'
    assert store.get_json(store.key("account", "bob")) == {"balance": 1}

    with store.lock("account", "bob"):
        assert "gacha:test:lock:account:bob" in client.held
    assert client.held == set()
    assert store.ping() is True


def test_redis_transient_error_is_retried(monkeypatch):
    monkeypatch.setattr("core.db.retry.time.sleep", lambda _seconds: None)
    client = FakeRedis()
    client.data["k"] = b"v"
    client.fail_next = RedisConnectionError("reset")
    store = KeyValueStore("redis", client=client)
    assert store.get("k") == b"v"


def test_redis_error_becomes_persistence_unavailable():
    client = FakeRedis()
    client.fail_next = ResponseError("WRONGTYPE")
    store = KeyValueStore("redis", client=client)
    with pytest.raises(PersistenceUnavailable):
        store.put("k", b"v")


def test_redis_lock_contention_times_out():
    client = FakeRedis()
    client.held.add("gacha:lock:pool")
    store = KeyValueStore("redis", client=client, lock_timeout=0.1)
    with pytest.raises(PersistenceUnavailable):
        with store.lock("pool"):
            pass


def test_build_store_from_settings(app_settings):
    store = build_store(app_settings)
    assert store.backend_name == "memory"
    assert store.prefix == app_settings.REDIS_PREFIX


def test_redis_lock_release_failure_is_logged_with_meta(caplog):
    client = FakeRedis()
    client.lose_locks = True
    store = KeyValueStore("redis", client=client)
    with caplog.at_level(logging.WARNING, logger="kv_store"):
        with store.lock("pool"):
            pass

    records = [r for r in caplog.records if r.getMessage() == "kv.redis.lock_release_failed"]
    assert len(records) == 1
    assert records[0].meta["lock"] == "gacha:lock:pool"
    assert "no longer owned" in records[0].meta["error"]


class FakeCursor:
    def __init__(self, row=None) -> None:
        self.row = row

    def fetchone(self):
        return self.row


class FakePgConnection:
    def __init__(self, data: Dict[str, bytes]) -> None:
        self.data = data
        self.statements: list = []

    def execute(self, sql, params=()):
        self.statements.append(" ".join(sql.split()))
        if sql.lstrip().startswith("SELECT value"):
            value = self.data.get(params[0])
            return FakeCursor((value,) if value is not None else None)
        if sql.lstrip().startswith("INSERT"):
            self.data[params[0]] = params[1]
        return FakeCursor()


class FakePgPool:
    def __init__(self) -> None:
        self.data: Dict[str, bytes] = {}
        self.connections: list = []
        self.in_use = 0
        self.max_in_use = 0

    @contextmanager
    def connection(self):
        conn = FakePgConnection(self.data)
        self.connections.append(conn)
        self.in_use += 1
        self.max_in_use = max(self.max_in_use, self.in_use)
        try:
            yield conn
        finally:
            self.in_use -= 1


def _postgres_store(pool: FakePgPool) -> KeyValueStore:
    store = KeyValueStore("postgres", url="postgres://user:pw@db.example.com:5432/gacha")
    store._impl._pool = pool
    return store


def test_postgres_lock_reuses_its_connection():
    pool = FakePgPool()
    store = _postgres_store(pool)

    with store.lock("account", "bob"):
        store.put_json("balance", 10)
        with store.lock("pool"):
            store.put_json("consumed", [1])
            assert store.get_json("balance") == 10

    assert pool.max_in_use == 1
    assert len(pool.connections) == 1
    statements = pool.connections[0].statements
    assert sum("pg_advisory_lock" in s for s in statements) == 2
    assert sum("pg_advisory_unlock" in s for s in statements) == 2
    assert statements[-1].startswith("SELECT pg_advisory_unlock")

    assert store.get_json("consumed") == [1]
    assert len(pool.connections) == 2


def test_postgres_locked_threads_hold_one_connection_each():
    pool = FakePgPool()
    store = _postgres_store(pool)
    barrier = threading.Barrier(4)

    def worker(account):
        with store.lock("account", account):
            barrier.wait()
            current = store.get_json(account, 0)
            store.put_json(account, current + 1)

    threads = [threading.Thread(target=worker, args=(f"user{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(pool.connections) == 4
    assert [store.get_json(f"user{i}") for i in range(4)] == [1, 1, 1, 1]
