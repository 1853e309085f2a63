# -*- coding: utf-8 -*-
"""Durable key-value storage with per-key atomic writes and named locks."""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Set, TypeVar

import psycopg
import redis
from redis.exceptions import LockError, RedisError

from core.db.postgres import create_connection_pool, mask_dsn
from core.db.retry import with_db_retries
from core.errors import PersistenceUnavailable

log = logging.getLogger(__name__)

T = TypeVar("T")


class _LockRegistry:
    """Process-local reentrant locks keyed by name."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
            return lock


class _MemoryKeyValueStore:
    """In-memory store for tests and single-process deployments."""

    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: Dict[str, bytes] = {}
        self._locks = _LockRegistry()

    def ping(self) -> bool:
        return True

    def start(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def stop(self) -> None:  # pragma: no cover - memory backend is eager
        return

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    @contextmanager
    def lock(self, name: str, timeout: float) -> Iterator[None]:
        local = self._locks.get(name)
        if not local.acquire(timeout=timeout):
            raise PersistenceUnavailable(f"lock timeout: {name}", lock=name)
        try:
            yield
        finally:
            local.release()


class _RedisKeyValueStore:
    """Redis-backed store; locks are shared between processes."""

    backend_name = "redis"

    def __init__(self, url: Optional[str] = None, *, client: Optional[Any] = None) -> None:
        if client is None:
            if not url:
                raise RuntimeError("REDIS_URL is required for redis storage")
            client = redis.from_url(url)
        self._r = client
        self._locks = _LockRegistry()

    def _call(self, fn: Callable[[], T], *, op: str, key: str) -> T:
        try:
            return with_db_retries(fn, backoff=0.1, logger=log, context={"op": op, "key": key})
        except RedisError as exc:
            raise PersistenceUnavailable(f"redis {op} failed: {exc}", key=key) from exc

    def ping(self) -> bool:
        try:
            return bool(self._r.ping())
        except RedisError:
            return False

    def start(self) -> None:
        return

    def stop(self) -> None:
        try:
            self._r.close()
        except RedisError as exc:  # pragma: no cover - defensive
            log.warning("kv.redis.close_failed", extra={"meta": {"error": str(exc)}})

    def get(self, key: str) -> Optional[bytes]:
        raw = self._call(lambda: self._r.get(key), op="get", key=key)
        if raw is None:
            return None
        if isinstance(raw, str):
            return raw.encode("utf-8")
        return bytes(raw)

    def put(self, key: str, value: bytes) -> None:
        self._call(lambda: self._r.set(key, bytes(value)), op="put", key=key)

    @contextmanager
    def lock(self, name: str, timeout: float) -> Iterator[None]:
        local = self._locks.get(name)
        if not local.acquire(timeout=timeout):
            raise PersistenceUnavailable(f"lock timeout: {name}", lock=name)
        try:
            try:
                remote = self._r.lock(name, timeout=timeout, blocking_timeout=timeout)
                acquired = remote.acquire()
            except RedisError as exc:
                raise PersistenceUnavailable(f"redis lock failed: {exc}", lock=name) from exc
            if not acquired:
                raise PersistenceUnavailable(f"lock timeout: {name}", lock=name)
            try:
                yield
            finally:
                try:
                    remote.release()
                except (LockError, RedisError) as exc:
                    log.warning("kv.redis.lock_release_failed", extra={"meta": {"lock": name, "error": str(exc)}})
        finally:
            local.release()


class _PostgresKeyValueStore:
    """PostgreSQL-backed store; locks are session advisory locks.

    While a thread holds a lock, its reads, writes and nested locks run on the
    connection that holds the advisory lock, so a thread checks out at most
    one pooled connection at a time.
    """

    backend_name = "postgres"

    _DDL = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value BYTEA NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """

    def __init__(self, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for postgres storage")
        self._dsn = dsn
        self._pool: Optional[Any] = None
        self._pool_lock = threading.RLock()
        self._locks = _LockRegistry()
        self._held = threading.local()

    def start(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                return
            try:
                self._pool = create_connection_pool(self._dsn)
            except psycopg.Error as exc:
                raise PersistenceUnavailable(f"postgres unavailable: {exc}") from exc
        self._with_connection(
            lambda conn: conn.execute(self._DDL),
            op="prepare",
            key="kv_store",
        )
        log.info("kv.postgres.started", extra={"meta": {"dsn": mask_dsn(self._dsn)}})

    def stop(self) -> None:
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if pool is None:
            return
        try:
            pool.close()
        except Exception as exc:  # pragma: no cover - defensive
            log.warning("kv.postgres.close_failed", extra={"meta": {"error": str(exc)}})

    def _ensure_pool(self) -> Any:
        if self._pool is None:
            self.start()
        if self._pool is None:
            raise PersistenceUnavailable("postgres connection pool is not available")
        return self._pool

    def _with_connection(self, fn: Callable[[Any], T], *, op: str, key: str) -> T:
        conn = getattr(self._held, "conn", None)
        if conn is not None:
            # No retry on the lock-holding connection.
            try:
                return fn(conn)
            except psycopg.Error as exc:
                raise PersistenceUnavailable(f"postgres {op} failed: {exc}", key=key) from exc

        def operation() -> T:
            with self._ensure_pool().connection() as conn:
                return fn(conn)

        try:
            return with_db_retries(operation, logger=log, context={"op": op, "key": key})
        except psycopg.Error as exc:
            raise PersistenceUnavailable(f"postgres {op} failed: {exc}", key=key) from exc

    def ping(self) -> bool:
        try:
            self._with_connection(lambda conn: conn.execute("SELECT 1"), op="ping", key="")
        except PersistenceUnavailable:
            return False
        return True

    def get(self, key: str) -> Optional[bytes]:
        def operation(conn: Any) -> Optional[bytes]:
            row = conn.execute("SELECT value FROM kv_store WHERE key = %s", (key,)).fetchone()
            return bytes(row[0]) if row else None

        return self._with_connection(operation, op="get", key=key)

    def put(self, key: str, value: bytes) -> None:
        def operation(conn: Any) -> None:
            conn.execute(
                """
                INSERT INTO kv_store (key, value) VALUES (%s, %s)
                ON CONFLICT (key) DO UPDATE
                   SET value = EXCLUDED.value,
                       updated_at = now()
                """,
                (key, bytes(value)),
            )

        self._with_connection(operation, op="put", key=key)

    @staticmethod
    @contextmanager
    def _advisory_lock(conn: Any, name: str) -> Iterator[None]:
        conn.execute("SELECT pg_advisory_lock(hashtextextended(%s, 0))", (name,))
        try:
            yield
        finally:
            conn.execute("SELECT pg_advisory_unlock(hashtextextended(%s, 0))", (name,))

    @contextmanager
    def lock(self, name: str, timeout: float) -> Iterator[None]:
        local = self._locks.get(name)
        if not local.acquire(timeout=timeout):
            raise PersistenceUnavailable(f"lock timeout: {name}", lock=name)
        try:
            held = getattr(self._held, "conn", None)
            try:
                if held is not None:
                    with self._advisory_lock(held, name):
                        yield
                    return
                with self._ensure_pool().connection() as conn:
                    self._held.conn = conn
                    try:
                        with self._advisory_lock(conn, name):
                            yield
                    finally:
                        self._held.conn = None
            except psycopg.Error as exc:
                raise PersistenceUnavailable(f"postgres lock failed: {exc}", lock=name) from exc
        finally:
            local.release()


class KeyValueStore:
    """Facade that selects the backend and namespaces keys with a prefix."""

    def __init__(
        self,
        backend: str = "memory",
        *,
        url: Optional[str] = None,
        prefix: str = "gacha",
        lock_timeout: float = 10.0,
        client: Optional[Any] = None,
    ) -> None:
        backend = (backend or "memory").lower()
        self.backend = backend
        self.prefix = prefix.rstrip(":")
        self.lock_timeout = float(lock_timeout)
        self._local = threading.local()

        if backend == "memory":
            forbid_memory = os.getenv("FORBID_MEMORY_DB", "").lower() in {"1", "true", "yes", "on"}
            if forbid_memory:
                raise RuntimeError("Memory storage backend is disabled by configuration")
            self._impl: Any = _MemoryKeyValueStore()
            self._started = True
        elif backend == "redis":
            self._impl = _RedisKeyValueStore(url, client=client)
            self._started = True
        elif backend == "postgres":
            self._impl = _PostgresKeyValueStore(url or "")
            self._started = False
        else:
            raise RuntimeError(f"Unsupported storage backend: {backend}")

    @property
    def backend_name(self) -> str:
        return self._impl.backend_name

    def start(self) -> None:
        self._impl.start()
        self._started = True

    def stop(self) -> None:
        try:
            self._impl.stop()
        finally:
            self._started = False

    def _ensure_started(self) -> None:
        if not self._started:
            self.start()

    def key(self, *parts: Any) -> str:
        return ":".join([self.prefix, *(str(part) for part in parts)])

    def get(self, key: str) -> Optional[bytes]:
        self._ensure_started()
        return self._impl.get(key)

    def put(self, key: str, value: bytes) -> None:
        self._ensure_started()
        self._impl.put(key, value)

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PersistenceUnavailable(f"corrupt value at {key}", key=key) from exc

    def put_json(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False, sort_keys=True)
        self.put(key, payload.encode("utf-8"))

    @contextmanager
    def lock(self, *parts: Any) -> Iterator[None]:
        """Serialize critical sections sharing the same name.

        Reentrant per thread: nested sections on a name already held by the
        current thread run without acquiring the backend lock again.
        """

        self._ensure_started()
        name = self.key("lock", *parts)
        held = self._held_locks()
        if name in held:
            yield
            return
        with self._impl.lock(name, self.lock_timeout):
            held.add(name)
            try:
                yield
            finally:
                held.discard(name)

    def _held_locks(self) -> Set[str]:
        held = getattr(self._local, "held", None)
        if held is None:
            held = set()
            self._local.held = held
        return held

    def ping(self) -> bool:
        return self._impl.ping()


def build_store(settings: Any) -> KeyValueStore:
    backend = settings.STORE_BACKEND
    url = settings.REDIS_URL if backend == "redis" else settings.DATABASE_URL
    return KeyValueStore(
        backend,
        url=url,
        prefix=settings.REDIS_PREFIX,
        lock_timeout=settings.LOCK_TIMEOUT_SEC,
    )


__all__ = ["KeyValueStore", "build_store"]
