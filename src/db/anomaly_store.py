"""
Anomaly event persistence (``anomaly_events`` table).

Events are written once, as one batch per detection run, and never
updated.  Direction is stored as ``spike`` / ``drop``.
"""
from __future__ import annotations

import datetime
from typing import Any, Sequence

from sqlalchemy import text

from src.core.logging import get_logger
from src.db.connection import readonly_connection, write_connection
from src.db.executor import serialise_value
from src.engine.anomaly_detector import AnomalyEvent

logger = get_logger(__name__)

_TABLE = "anomaly_events"

_CREATE_SQL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    id               BIGSERIAL PRIMARY KEY,
    client_id        UUID NOT NULL,
    metric_slug      TEXT NOT NULL,
    direction        TEXT NOT NULL CHECK (direction IN ('spike', 'drop')),
    z_score          DOUBLE PRECISION NOT NULL,
    current_value    DOUBLE PRECISION NOT NULL,
    baseline_mean    DOUBLE PRECISION NOT NULL,
    baseline_stddev  DOUBLE PRECISION NOT NULL,
    severity         TEXT NOT NULL CHECK (severity IN ('info', 'warning', 'critical')),
    detected_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_anomaly_events_client ON {_TABLE} (client_id, detected_at DESC);
"""

_INSERT_SQL = text(f"""
    INSERT INTO {_TABLE}
        (client_id, metric_slug, direction, z_score, current_value,
         baseline_mean, baseline_stddev, severity, detected_at)
    VALUES
        (:client_id, :metric_slug, :direction, :z_score, :current_value,
         :baseline_mean, :baseline_stddev, :severity, :detected_at)
""")

_STORED_DIRECTION = {"up": "spike", "down": "drop"}


def ensure_anomaly_table() -> None:
    """Create the anomaly events table if it doesn't exist."""
    with write_connection() as conn:
        conn.execute(text(_CREATE_SQL))
    logger.info("Anomaly table '%s' ensured", _TABLE)


class AnomalyStore:
    def __init__(self, ensure_table: bool = True):
        self._ready = not ensure_table

    def _ensure(self) -> None:
        if not self._ready:
            ensure_anomaly_table()
            self._ready = True

    def save_events(self, client_id: str, events: Sequence[AnomalyEvent]) -> int:
        """Insert all *events* in one transaction; returns the number written."""
        if not events:
            return 0
        self._ensure()
        records = [
            {
                "client_id": client_id,
                "metric_slug": e.metric_slug,
                "direction": _STORED_DIRECTION[e.direction],
                "z_score": e.z_score,
                "current_value": e.current_value,
                "baseline_mean": e.baseline_mean,
                "baseline_stddev": e.baseline_std_dev,
                "severity": e.severity,
                "detected_at": e.detected_at,
            }
            for e in events
        ]
        with write_connection() as conn:
            conn.execute(_INSERT_SQL, records)
        logger.info("Stored %d anomaly events for client %s", len(records), client_id)
        return len(records)

    def list_events(
        self,
        client_id: str,
        metric_slug: str | None = None,
        severity: str | None = None,
        since: datetime.datetime | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Stored events, newest first, plus the total matching count."""
        self._ensure()
        clauses = ["client_id = :client_id"]
        params: dict[str, Any] = {"client_id": client_id}
        if metric_slug:
            clauses.append("metric_slug = :metric_slug")
            params["metric_slug"] = metric_slug
        if severity:
            clauses.append("severity = :severity")
            params["severity"] = severity
        if since is not None:
            clauses.append("detected_at >= :since")
            params["since"] = since
        where = " AND ".join(clauses)

        page_sql = text(f"""
            SELECT id, metric_slug, direction, z_score, current_value,
                   baseline_mean, baseline_stddev, severity, detected_at
            FROM {_TABLE}
            WHERE {where}
            ORDER BY detected_at DESC, id DESC
            LIMIT :limit OFFSET :offset
        """)
        count_sql = text(f"SELECT COUNT(*) FROM {_TABLE} WHERE {where}")

        with readonly_connection() as conn:
            total = conn.execute(count_sql, params).scalar() or 0
            result = conn.execute(page_sql, {**params, "limit": limit, "offset": offset})
            rows = [
                {k: serialise_value(v) for k, v in row.items()}
                for row in result.mappings()
            ]
        return rows, int(total)
