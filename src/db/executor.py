"""
Read-only SQL executor.

Every compiled metric query runs through `execute_readonly`, which:
  1. Opens a READ ONLY transaction (Postgres-enforced)
  2. Sends the SQL through text() with bound parameters
  3. Enforces a per-statement timeout (statement_timeout)
  4. Converts Decimal/date/datetime to JSON-safe Python types
"""
from __future__ import annotations

import datetime
import decimal
import uuid
from typing import Any, Mapping

from sqlalchemy import text

from src.core.config import get_settings
from src.core.logging import get_logger
from src.db.connection import readonly_connection

logger = get_logger(__name__)


def serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return val.total_seconds()
    if isinstance(val, uuid.UUID):
        return str(val)
    return val


def execute_readonly(
    sql: str,
    params: Mapping[str, Any] | None = None,
    timeout_ms: int | None = None,
) -> list[dict[str, Any]]:
    """Execute a read-only query and return rows as serialisable dicts.

    Driver errors (syntax, timeout, connectivity) propagate as
    SQLAlchemy exceptions; callers decide how to surface them.
    """
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms
    logger.debug("Executing SQL (%d chars, %d params)", len(sql), len(params or {}))

    with readonly_connection() as conn:
        conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))

        result = conn.execute(text(sql), dict(params or {}))
        columns = list(result.keys())
        rows = [
            {col: serialise_value(val) for col, val in zip(columns, row)}
            for row in result.fetchall()
        ]

    logger.debug("Returned %d rows", len(rows))
    return rows
