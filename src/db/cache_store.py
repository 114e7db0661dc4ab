"""
Postgres-backed query cache store (``query_cache`` table).

The table is created on first use via `ensure_cache_table()`.  Every
statement runs under ``statement_timeout = cache_timeout_ms`` so a slow
database turns into a cache miss instead of a stalled request.
"""
from __future__ import annotations

import datetime
import json

from sqlalchemy import text

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.connection import write_connection
from src.engine.cache import CacheEntry

logger = get_logger(__name__)

_TABLE = "query_cache"

_CREATE_SQL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id              BIGSERIAL PRIMARY KEY,
    cache_key       TEXT NOT NULL UNIQUE,
    metric_slug     TEXT NOT NULL,
    client_id       UUID NOT NULL,
    result_data     JSONB NOT NULL,
    hit_count       INTEGER NOT NULL DEFAULT 0,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at      TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_query_cache_expires ON {_TABLE} (expires_at);
"""

_FETCH_SQL = text(f"""
    SELECT cache_key, metric_slug, client_id, result_data, hit_count, created_at, expires_at
    FROM {_TABLE}
    WHERE cache_key = :cache_key AND expires_at > :now
""")

_UPSERT_SQL = text(f"""
    INSERT INTO {_TABLE}
        (cache_key, metric_slug, client_id, result_data, hit_count, created_at, expires_at)
    VALUES
        (:cache_key, :metric_slug, :client_id, CAST(:result_data AS JSONB), 0, :created_at, :expires_at)
    ON CONFLICT (cache_key) DO UPDATE SET
        metric_slug = EXCLUDED.metric_slug,
        client_id   = EXCLUDED.client_id,
        result_data = EXCLUDED.result_data,
        hit_count   = 0,
        created_at  = EXCLUDED.created_at,
        expires_at  = EXCLUDED.expires_at
""")

_INCREMENT_SQL = text(f"UPDATE {_TABLE} SET hit_count = hit_count + 1 WHERE cache_key = :cache_key")

_DELETE_EXPIRED_SQL = text(f"DELETE FROM {_TABLE} WHERE expires_at <= :now")


def ensure_cache_table() -> None:
    """Create the cache table if it doesn't exist."""
    with write_connection() as conn:
        conn.execute(text(_CREATE_SQL))
    logger.info("Cache table '%s' ensured", _TABLE)


class PostgresCacheStore:
    def __init__(self, timeout_ms: int | None = None, ensure_table: bool = True):
        self._timeout_ms = timeout_ms or get_settings().cache_timeout_ms
        self._ready = not ensure_table

    def _ensure(self) -> None:
        if not self._ready:
            ensure_cache_table()
            self._ready = True

    def fetch(self, cache_key: str, now: datetime.datetime) -> CacheEntry | None:
        self._ensure()
        with write_connection(self._timeout_ms) as conn:
            row = conn.execute(_FETCH_SQL, {"cache_key": cache_key, "now": now}).mappings().first()
        if row is None:
            return None
        data = row["result_data"]
        if isinstance(data, str):
            data = json.loads(data)
        return CacheEntry(
            cache_key=row["cache_key"],
            metric_slug=row["metric_slug"],
            client_id=str(row["client_id"]),
            result_data=data,
            hit_count=row["hit_count"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def upsert(self, entry: CacheEntry) -> None:
        self._ensure()
        with write_connection(self._timeout_ms) as conn:
            conn.execute(_UPSERT_SQL, {
                "cache_key": entry.cache_key,
                "metric_slug": entry.metric_slug,
                "client_id": entry.client_id,
                "result_data": json.dumps(entry.result_data, default=str),
                "created_at": entry.created_at,
                "expires_at": entry.expires_at,
            })

    def increment_hit_count(self, cache_key: str) -> None:
        self._ensure()
        with write_connection(self._timeout_ms) as conn:
            conn.execute(_INCREMENT_SQL, {"cache_key": cache_key})

    def delete_expired(self, now: datetime.datetime) -> int:
        self._ensure()
        with write_connection(self._timeout_ms) as conn:
            result = conn.execute(_DELETE_EXPIRED_SQL, {"now": now})
        return result.rowcount or 0
