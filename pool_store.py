"""Finite pool of credential records and its persisted consumed-index set."""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import requests

from core.errors import MalformedRecord, PoolSourceUnavailable
from kv_store import KeyValueStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Record:
    """One allocatable credential pair and its stable position in the pool."""

    index: int
    identifier: str
    secret: str = field(repr=False)

    def as_dict(self) -> Dict[str, object]:
        return {"index": self.index, "identifier": self.identifier, "secret": self.secret}


@dataclass(frozen=True)
class PoolStats:
    total: int
    consumed: int
    available: int


class Pool:
    """Ordered, immutable view over the records parsed from the source."""

    def __init__(self, records: Iterable[Record], fingerprint: str = "") -> None:
        self._records: Dict[int, Record] = {record.index: record for record in records}
        self.fingerprint = fingerprint

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, index: object) -> bool:
        return index in self._records

    @property
    def indices(self) -> Set[int]:
        return set(self._records)

    def get(self, index: int) -> Record:
        return self._records[index]

    def records(self) -> List[Record]:
        return [self._records[index] for index in sorted(self._records)]


def parse_record_line(line: str, index: int, separator: str = ":") -> Record:
    """Split ``identifier<SEP>secret`` on the first separator."""

    text = line.strip()
    if separator not in text:
        raise MalformedRecord(index, "missing separator")
    identifier, secret = text.split(separator, 1)
    identifier = identifier.strip()
    secret = secret.strip()
    if not identifier:
        raise MalformedRecord(index, "empty identifier")
    if not secret:
        raise MalformedRecord(index, "empty secret")
    return Record(index=index, identifier=identifier, secret=secret)


def parse_pool_source(text: str, separator: str = ":") -> Tuple[List[Record], int]:
    """Parse the source into records; returns ``(records, skipped)``.

    The record index is the 0-based line offset in the source, so blank and
    malformed lines keep the positions of the following records stable.
    """

    records: List[Record] = []
    skipped = 0
    for index, line in enumerate((text or "").splitlines()):
        if not line.strip():
            continue
        try:
            records.append(parse_record_line(line, index, separator))
        except MalformedRecord as exc:
            skipped += 1
            log.warning("pool.record_skipped", extra={"meta": {"line": exc.line_no, "reason": exc.reason}})
    return records, skipped


def fetch_pool_source(
    *,
    url: Optional[str] = None,
    path: Optional[str] = None,
    timeout: float = 15.0,
    attempts: int = 3,
    session: Optional[requests.Session] = None,
) -> str:
    """Return the raw pool source from a local file or an HTTP endpoint."""

    if path:
        file_path = Path(path).expanduser()
        try:
            return file_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PoolSourceUnavailable(f"cannot read pool file '{file_path}': {exc}") from exc

    if not url:
        raise PoolSourceUnavailable("neither POOL_SOURCE_URL nor POOL_SOURCE_FILE is configured")

    http = session or requests.Session()
    last_error: Optional[BaseException] = None
    for attempt in range(1, max(int(attempts), 1) + 1):
        try:
            response = http.get(url, timeout=timeout)
            response.raise_for_status()
            if attempt > 1:
                log.info("pool.fetch.retry_ok", extra={"meta": {"attempt": attempt}})
            return response.text
        except requests.RequestException as exc:
            last_error = exc
            log.warning(
                "pool.fetch.retry",
                extra={"meta": {"attempt": attempt, "max_attempts": attempts, "error": str(exc)}},
            )
            if attempt < attempts:
                time.sleep(min(0.5 * attempt, 3.0))
    raise PoolSourceUnavailable(f"pool source fetch failed: {last_error}") from last_error


class PoolStore:
    """Data access for the pool: records, consumed set and availability."""

    def __init__(self, store: KeyValueStore, *, separator: str = ":") -> None:
        self._store = store
        self._separator = separator
        self._pool = Pool(())
        self._consumed_key = store.key("pool", "consumed")
        self._fingerprint_key = store.key("pool", "fingerprint")

    @property
    def pool(self) -> Pool:
        return self._pool

    def lock(self):
        return self._store.lock("pool")

    def load(self, text: str) -> Pool:
        records, skipped = parse_pool_source(text, self._separator)
        fingerprint = hashlib.sha256((text or "").encode("utf-8")).hexdigest()

        with self.lock():
            previous = self._store.get_json(self._fingerprint_key)
            if previous and previous != fingerprint:
                log.warning(
                    "pool.source_changed",
                    extra={"meta": {"previous": previous[:12], "current": fingerprint[:12]}},
                )
            if previous != fingerprint:
                self._store.put_json(self._fingerprint_key, fingerprint)

        self._pool = Pool(records, fingerprint)
        log.info(
            "pool.loaded",
            extra={"meta": {"records": len(records), "skipped": skipped, "fingerprint": fingerprint[:12]}},
        )
        return self._pool

    def consumed_indices(self) -> Set[int]:
        raw = self._store.get_json(self._consumed_key, [])
        return {int(item) for item in raw}

    def available_indices(self) -> Set[int]:
        return self._pool.indices - self.consumed_indices()

    def mark_consumed(self, indices: Iterable[int]) -> Set[int]:
        """Union ``indices`` into the consumed set; returns the newly consumed."""

        wanted = {int(index) for index in indices}
        if not wanted:
            return set()
        with self.lock():
            consumed = self.consumed_indices()
            added = wanted - consumed
            if added:
                self._store.put_json(self._consumed_key, sorted(consumed | added))
        return added

    def stats(self) -> PoolStats:
        total = len(self._pool)
        available = len(self.available_indices())
        return PoolStats(total=total, consumed=total - available, available=available)


__all__ = [
    "Pool",
    "PoolStats",
    "PoolStore",
    "Record",
    "fetch_pool_source",
    "parse_pool_source",
    "parse_record_line",
]
