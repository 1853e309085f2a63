"""Draw distinct, unconsumed records from the shared pool."""

from __future__ import annotations

import logging
import random
from typing import List, Optional

from core.errors import InsufficientSupply, InvalidRequest
from pool_store import PoolStore, Record

log = logging.getLogger(__name__)


class Allocator:
    """Uniform sampling without replacement over the available indices.

    Availability is re-read from the store on every call while the pool lock
    is held, and the chosen indices are persisted as consumed before the
    records are returned, so a record is spent the moment it is drawn.
    """

    def __init__(self, pool_store: PoolStore, *, rng: Optional[random.Random] = None) -> None:
        self._pool_store = pool_store
        self._rng = rng or random.SystemRandom()

    def allocate(self, count: int) -> List[Record]:
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidRequest(f"count must be an integer, got {count!r}")
        if count < 0:
            raise InvalidRequest(f"count must be non-negative, got {count}")
        if count == 0:
            return []

        with self._pool_store.lock():
            available = self._pool_store.available_indices()
            if len(available) < count:
                log.warning(
                    "allocator.insufficient_supply",
                    extra={"meta": {"available": len(available), "requested": count}},
                )
                raise InsufficientSupply(len(available), count)

            chosen = self._rng.sample(sorted(available), count)
            self._pool_store.mark_consumed(chosen)

        pool = self._pool_store.pool
        records = [pool.get(index) for index in chosen]
        log.info(
            "allocator.allocated",
            extra={"meta": {"count": count, "indices": sorted(chosen), "remaining": len(available) - count}},
        )
        return records


def allocate(pool_store: PoolStore, count: int, *, rng: Optional[random.Random] = None) -> List[Record]:
    return Allocator(pool_store, rng=rng).allocate(count)


__all__ = ["Allocator", "allocate"]
