"""PostgreSQL helpers backing the durable key-value store."""

from .postgres import (
    ResilientConnectionPool,
    create_connection_pool,
    ensure_conninfo,
    mask_dsn,
    normalize_dsn,
)

__all__ = [
    "ResilientConnectionPool",
    "create_connection_pool",
    "ensure_conninfo",
    "mask_dsn",
    "normalize_dsn",
]
