"""
Default tenant resolution.

Requests may name a ``client_id``; when they don't, the engine falls back
to ``DEFAULT_CLIENT_ID`` from settings, and failing that to the oldest
client in the database.  The database answer is cached for
``default_tenant_ttl_seconds``.
"""
from __future__ import annotations

import threading
import time
from typing import Callable

from sqlalchemy import text

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.connection import readonly_connection

logger = get_logger(__name__)

_OLDEST_CLIENT_SQL = text("SELECT id FROM clients ORDER BY created_at ASC, id ASC LIMIT 1")

_lock = threading.Lock()
_cached_id: str | None = None
_cached_at: float = 0.0


def lookup_oldest_client_id() -> str | None:
    with readonly_connection() as conn:
        value = conn.execute(_OLDEST_CLIENT_SQL).scalar()
    return str(value) if value is not None else None


def get_default_client_id(
    requested: str | None = None,
    lookup: Callable[[], str | None] = lookup_oldest_client_id,
) -> str:
    """Tenant to scope this request to.

    Raises
    ------
    LookupError
        If no client id was given, none is configured and the clients
        table is empty.
    """
    global _cached_id, _cached_at
    if requested:
        return requested

    settings = get_settings()
    if settings.default_client_id:
        return settings.default_client_id

    with _lock:
        now = time.monotonic()
        if _cached_id is not None and now - _cached_at < settings.default_tenant_ttl_seconds:
            return _cached_id
        client_id = lookup()
        if client_id is None:
            raise LookupError("No client found to use as the default tenant")
        _cached_id, _cached_at = client_id, now
    logger.info("Default tenant resolved to %s", client_id)
    return client_id


def invalidate_default_tenant_cache() -> None:
    global _cached_id, _cached_at
    with _lock:
        _cached_id, _cached_at = None, 0.0
