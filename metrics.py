"""Prometheus metrics for pulls, grants and pool supply."""
from __future__ import annotations

import os
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

REGISTRY = CollectorRegistry()

_ENV = (os.getenv("APP_ENV") or "prod").strip() or "prod"


def _labels(**values: str) -> dict[str, str]:
    return {"env": _ENV, **values}


gacha_pulls_total = Counter(
    "gacha_pulls_total",
    "Gacha pulls grouped by tier and outcome",
    labelnames=("tier", "result", "env"),
    registry=REGISTRY,
)

gacha_records_allocated_total = Counter(
    "gacha_records_allocated_total",
    "Pool records handed out",
    labelnames=("env",),
    registry=REGISTRY,
)

grants_total = Counter(
    "grants_total",
    "Reward grant attempts grouped by kind and outcome",
    labelnames=("kind", "result", "env"),
    registry=REGISTRY,
)

coins_granted_total = Counter(
    "coins_granted_total",
    "Coins credited through reward grants",
    labelnames=("kind", "env"),
    registry=REGISTRY,
)

pool_available = Gauge(
    "pool_available",
    "Pool records not yet consumed",
    labelnames=("env",),
    registry=REGISTRY,
)

operation_duration_seconds = Histogram(
    "operation_duration_seconds",
    "Duration of caller-facing operations",
    labelnames=("operation", "env"),
    registry=REGISTRY,
)

process_uptime_seconds = Gauge(
    "process_uptime_seconds",
    "Process uptime in seconds",
    registry=REGISTRY,
)

_START_TIME = time.time()


def record_pull(tier: str, result: str, allocated: int = 0) -> None:
    gacha_pulls_total.labels(**_labels(tier=tier, result=result)).inc()
    if allocated:
        gacha_records_allocated_total.labels(**_labels()).inc(allocated)


def record_grant(kind: str, result: str, amount: int = 0) -> None:
    grants_total.labels(**_labels(kind=kind, result=result)).inc()
    if amount and result == "ok":
        coins_granted_total.labels(**_labels(kind=kind)).inc(amount)


def set_pool_available(count: int) -> None:
    pool_available.labels(**_labels()).set(count)


def observe_operation(operation: str, seconds: float) -> None:
    operation_duration_seconds.labels(**_labels(operation=operation)).observe(max(0.0, seconds))


def render_metrics() -> bytes:
    """Return the current metrics payload in Prometheus text format."""

    process_uptime_seconds.set(max(0.0, time.time() - _START_TIME))
    return generate_latest(REGISTRY)


__all__: Iterable[str] = [
    "REGISTRY",
    "coins_granted_total",
    "gacha_pulls_total",
    "gacha_records_allocated_total",
    "grants_total",
    "observe_operation",
    "operation_duration_seconds",
    "pool_available",
    "process_uptime_seconds",
    "record_grant",
    "record_pull",
    "render_metrics",
    "set_pool_available",
]
