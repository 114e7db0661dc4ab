"""SQLAlchemy engine and connection helpers.

One shared pooled engine.  Engine queries go through
`readonly_connection`, which pins the transaction to READ ONLY; the cache
and anomaly stores write through `write_connection`.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            echo=False,
        )
        logger.info("DB engine created  host=%s  db=%s", settings.postgres_host, settings.postgres_db)
    return _engine


def dispose_engine() -> None:
    """Drop pooled connections (used after fork and in tests)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


@contextmanager
def readonly_connection() -> Generator[Connection, None, None]:
    """Yield a connection whose transaction is READ ONLY.

    The transaction is rolled back on exit; nothing it ran can persist.
    """
    engine = get_engine()
    conn = engine.connect()
    try:
        conn.execute(text("SET TRANSACTION READ ONLY"))
        yield conn
    finally:
        conn.rollback()
        conn.close()


@contextmanager
def write_connection(timeout_ms: int | None = None) -> Generator[Connection, None, None]:
    """Yield a connection inside a transaction that commits on clean exit."""
    engine = get_engine()
    with engine.begin() as conn:
        if timeout_ms:
            conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        yield conn
