"""
Query result cache.

Sits in front of the query compiler.  Entries are keyed by a digest of
(metric, tenant, filters, time range, dimensions) and expire after a TTL.
The backing store is pluggable: Postgres (``query_cache`` table, shared
by every process) or a process-local dict for tests and single-process
runs.

The cache never decides correctness.  Any store failure is logged and
treated as a miss, and hit-count bookkeeping runs in the background so a
slow or broken store cannot hold up a read.
"""
from __future__ import annotations

import datetime
import hashlib
import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

from pydantic import BaseModel

from src.core.config import get_settings
from src.core.logging import get_logger
from src.core.utils import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime.datetime]


# ── Cache entry ─────────────────────────────────────────

@dataclass(frozen=True)
class CacheEntry:
    cache_key: str
    metric_slug: str
    client_id: str
    result_data: Any
    hit_count: int
    created_at: datetime.datetime
    expires_at: datetime.datetime

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at <= now


class CacheStore(Protocol):
    def fetch(self, cache_key: str, now: datetime.datetime) -> CacheEntry | None: ...

    def upsert(self, entry: CacheEntry) -> None: ...

    def increment_hit_count(self, cache_key: str) -> None: ...

    def delete_expired(self, now: datetime.datetime) -> int: ...


# ── In-memory backend ───────────────────────────────────

class InMemoryCacheStore:
    """Thread-safe dict-backed store."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def fetch(self, cache_key: str, now: datetime.datetime) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(cache_key)
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def upsert(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.cache_key] = entry

    def increment_hit_count(self, cache_key: str) -> None:
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is not None:
                self._entries[cache_key] = replace(entry, hit_count=entry.hit_count + 1)

    def delete_expired(self, now: datetime.datetime) -> int:
        with self._lock:
            expired = [k for k, v in self._entries.items() if v.is_expired(now)]
            for k in expired:
                del self._entries[k]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# ── Key derivation ──────────────────────────────────────

def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    return value


def make_cache_key(
    metric_slug: str,
    client_id: str,
    filters: Any = None,
    time_range: str | None = None,
    dimensions: list[str] | None = None,
) -> str:
    """Deterministic digest of the query-shaping inputs.

    Mapping key order is normalised away; list order (dimensions, filters)
    is significant.
    """
    payload = [
        metric_slug,
        client_id,
        _plain(filters if filters is not None else {}),
        time_range or "default",
        _plain(dimensions or []),
    ]
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


# ── Cache ───────────────────────────────────────────────

class QueryCache:
    """TTL cache over a ``CacheStore``.

    Parameters
    ----------
    store : CacheStore
        Backend holding the entries.
    clock : callable
        Returns the current UTC time; injectable for tests.
    """

    def __init__(self, store: CacheStore, clock: Clock = utcnow):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._pending: set[Future] = set()
        self._bookkeeping = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cache-hits")

    make_key = staticmethod(make_cache_key)

    # ── Public API ──────────────────────────────────────

    def get(self, cache_key: str) -> Any | None:
        """Cached result data, or ``None`` on miss, expiry or store failure."""
        now = self._clock()
        try:
            entry = self._store.fetch(cache_key, now)
        except Exception as exc:
            self._count(error=True)
            logger.warning("Cache lookup failed, treating as miss: %s", exc)
            return None

        if entry is None or entry.is_expired(now):
            self._count(hit=False)
            return None

        self._count(hit=True)
        self._schedule_hit(cache_key)
        logger.debug("Cache HIT key=%s", cache_key[:16])
        return entry.result_data

    def set(
        self,
        cache_key: str,
        metric_slug: str,
        client_id: str,
        result_data: Any,
        ttl_minutes: float | None = None,
    ) -> None:
        """Store *result_data*, replacing any entry for *cache_key*."""
        if ttl_minutes is None:
            ttl_minutes = get_settings().cache_ttl_minutes
        now = self._clock()
        entry = CacheEntry(
            cache_key=cache_key,
            metric_slug=metric_slug,
            client_id=client_id,
            result_data=result_data,
            hit_count=0,
            created_at=now,
            expires_at=now + datetime.timedelta(minutes=ttl_minutes),
        )
        try:
            self._store.upsert(entry)
        except Exception as exc:
            self._count(error=True)
            logger.warning("Cache store failed for %s: %s", metric_slug, exc)
            return
        logger.debug("Cache SET key=%s ttl=%smin", cache_key[:16], ttl_minutes)

    def cleanup_expired(self) -> int:
        """Remove expired entries; returns how many were removed (0 on failure)."""
        try:
            removed = self._store.delete_expired(self._clock())
        except Exception as exc:
            logger.warning("Cache cleanup failed: %s", exc)
            return 0
        if removed:
            logger.info("Cache cleanup removed %d expired entries", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        """Process-local hit / miss counters."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "backend": type(self._store).__name__,
                "hits": self._hits,
                "misses": self._misses,
                "errors": self._errors,
                "hit_rate": round(self._hits / total, 3) if total else 0.0,
            }

    def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding hit-count updates."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    # ── Internals ───────────────────────────────────────

    def _count(self, hit: bool = False, error: bool = False) -> None:
        with self._lock:
            if error:
                self._errors += 1
                self._misses += 1
            elif hit:
                self._hits += 1
            else:
                self._misses += 1

    def _schedule_hit(self, cache_key: str) -> None:
        try:
            future = self._bookkeeping.submit(self._store.increment_hit_count, cache_key)
        except RuntimeError:
            # executor shut down at interpreter exit
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._hit_done)

    def _hit_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.warning("Failed to increment cache hit count: %s", exc)


# ── Module-level singleton ──────────────────────────────

_cache: QueryCache | None = None
_cache_lock = threading.Lock()


def build_store(backend: str | None = None) -> CacheStore:
    backend = (backend or get_settings().cache_backend).lower()
    if backend == "memory":
        return InMemoryCacheStore()
    if backend == "postgres":
        from src.db.cache_store import PostgresCacheStore
        return PostgresCacheStore()
    raise ValueError(f"Unknown cache backend: {backend!r}")


def get_cache() -> QueryCache:
    """Return the process-wide cache, built from settings on first use."""
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = QueryCache(build_store())
            logger.info("Query cache ready (backend=%s)", type(_cache._store).__name__)
        return _cache
