"""
Anomaly detection over weekly metric buckets.

For each metric the lookback window is cut into consecutive, disjoint
7-day buckets ending today.  The newest bucket is the current value, the
older ones form the baseline.  An event is raised when the current value
sits more than ``threshold`` population standard deviations from the
baseline mean.

Metrics are analysed independently on a bounded thread pool; a metric
whose queries fail is logged and skipped, never fatal to the run.
"""
from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Protocol, Sequence

from src.core.config import get_settings
from src.core.logging import get_logger
from src.core.utils import timer, utcnow
from src.engine.intent import MetricRef, QueryIntent, TimeRange
from src.engine.query_compiler import (
    Executor,
    QueryExecutionError,
    UnknownMetricError,
    CompileError,
    run_metric_query,
)
from src.governance.metric_catalog import MetricCatalog, MetricDefinition, load_metric_catalog

logger = get_logger(__name__)

BUCKET_DAYS = 7
MIN_BUCKETS = 3

SEVERITY_RANK = {"critical": 3, "warning": 2, "info": 1}

_ADDITIVE_UNITS = {"count", "dollars", "tokens"}


@dataclass(frozen=True)
class AnomalyEvent:
    metric_slug: str
    direction: str  # up | down
    z_score: float
    current_value: float
    baseline_mean: float
    baseline_std_dev: float
    severity: str  # info | warning | critical
    detected_at: datetime

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["detected_at"] = self.detected_at.isoformat()
        return d


@dataclass(frozen=True)
class BaselineScore:
    mean: float
    std_dev: float
    z_score: float


class AnomalySink(Protocol):
    def save_events(self, client_id: str, events: Sequence[AnomalyEvent]) -> int: ...


# ── Pure math ───────────────────────────────────────────

def score_against_baseline(baseline: Sequence[float], current: float) -> BaselineScore:
    """Mean, population std-dev and z-score of *current*; z is 0 when std-dev is 0."""
    if not baseline:
        return BaselineScore(mean=0.0, std_dev=0.0, z_score=0.0)
    mean = sum(baseline) / len(baseline)
    variance = sum((v - mean) ** 2 for v in baseline) / len(baseline)
    std_dev = math.sqrt(variance)
    z = 0.0 if std_dev == 0 else (current - mean) / std_dev
    return BaselineScore(mean=mean, std_dev=std_dev, z_score=z)


def severity_for(z_score: float) -> str:
    magnitude = abs(z_score)
    if magnitude > 3:
        return "critical"
    if magnitude > 2.5:
        return "warning"
    return "info"


def compute_anomaly(
    metric_slug: str,
    bucket_values: Sequence[float],
    threshold: float,
    detected_at: datetime | None = None,
) -> AnomalyEvent | None:
    """Score the last of *bucket_values* (oldest first) against the rest.

    Returns None with fewer than ``MIN_BUCKETS`` buckets or when
    ``|z| <= threshold``.
    """
    if len(bucket_values) < MIN_BUCKETS:
        return None
    current = bucket_values[-1]
    score = score_against_baseline(bucket_values[:-1], current)
    if abs(score.z_score) <= threshold:
        return None
    return AnomalyEvent(
        metric_slug=metric_slug,
        direction="up" if current > score.mean else "down",
        z_score=score.z_score,
        current_value=current,
        baseline_mean=score.mean,
        baseline_std_dev=score.std_dev,
        severity=severity_for(score.z_score),
        detected_at=detected_at or utcnow(),
    )


def weekly_buckets(today: date, lookback_days: int) -> list[tuple[date, date]]:
    """Inclusive ``(start, end)`` windows, oldest first, the last ending *today*."""
    weeks = lookback_days // BUCKET_DAYS
    buckets = []
    for w in range(weeks):
        end = today - timedelta(days=w * BUCKET_DAYS)
        buckets.append((end - timedelta(days=BUCKET_DAYS - 1), end))
    buckets.reverse()
    return buckets


def bucket_value(rows: list[dict[str, Any]], unit: str) -> float:
    """Collapse one bucket's rows to a single number."""
    values = [float(r["value"]) for r in rows if r.get("value") is not None]
    if not values:
        return 0.0
    if len(values) == 1 or unit in _ADDITIVE_UNITS:
        return sum(values)
    return sum(values) / len(values)


def sort_by_severity(events: list[AnomalyEvent]) -> list[AnomalyEvent]:
    return sorted(events, key=lambda e: (SEVERITY_RANK[e.severity], abs(e.z_score)), reverse=True)


def severity_breakdown(events: Sequence[AnomalyEvent]) -> dict[str, int]:
    counts = {"critical": 0, "warning": 0, "info": 0}
    for e in events:
        counts[e.severity] += 1
    return counts


# ── Detector ────────────────────────────────────────────

class AnomalyDetector:
    """Runs anomaly analysis for one tenant at a time."""

    def __init__(
        self,
        catalog_loader: Callable[[], MetricCatalog] = load_metric_catalog,
        executor: Executor | None = None,
        store: AnomalySink | None = None,
        today: Callable[[], date] | None = None,
        max_workers: int | None = None,
    ):
        self._catalog_loader = catalog_loader
        self._executor = executor
        self._store = store
        self._today = today or (lambda: utcnow().date())
        self._max_workers = max_workers or get_settings().anomaly_max_workers

    def _metrics_to_analyze(self, metric_slugs: list[str] | None) -> list[MetricDefinition]:
        catalog = self._catalog_loader()
        wanted = metric_slugs or get_settings().anomaly_default_metrics
        metrics = []
        for slug in wanted:
            metric = catalog.metric(slug)
            if metric is None or not metric.is_active:
                logger.warning("Skipping anomaly analysis for unknown/inactive metric '%s'", slug)
                continue
            metrics.append(metric)
        return metrics

    def bucket_series(
        self,
        metric: MetricDefinition,
        client_id: str,
        lookback_days: int,
    ) -> list[float]:
        """Bucket values for *metric*, oldest first.  Query errors propagate."""
        values = []
        for start, end in weekly_buckets(self._today(), lookback_days):
            intent = QueryIntent(
                intent_type="query",
                metric=MetricRef(slug=metric.slug, display_name=metric.display_name),
                time_range=TimeRange(type="absolute", value="custom", start=start, end=end),
            )
            result = run_metric_query(metric, intent, client_id, executor=self._executor)
            values.append(bucket_value(result.rows, metric.unit))
        return values

    def analyze_metric(
        self,
        metric: MetricDefinition,
        client_id: str,
        lookback_days: int,
        threshold: float,
    ) -> AnomalyEvent | None:
        if lookback_days // BUCKET_DAYS < MIN_BUCKETS:
            logger.info("Not enough history for %s (%d days)", metric.slug, lookback_days)
            return None
        try:
            series = self.bucket_series(metric, client_id, lookback_days)
        except (QueryExecutionError, UnknownMetricError, CompileError) as exc:
            logger.warning("Anomaly analysis skipped for %s: %s", metric.slug, exc)
            return None
        except Exception:
            logger.exception("Anomaly analysis failed for %s", metric.slug)
            return None
        return compute_anomaly(metric.slug, series, threshold)

    def detect_anomalies(
        self,
        client_id: str,
        metric_slugs: list[str] | None = None,
        lookback_days: int | None = None,
        threshold: float | None = None,
    ) -> list[AnomalyEvent]:
        """Analyse metrics for *client_id*; persist and return events, most severe first."""
        settings = get_settings()
        lookback_days = lookback_days or settings.anomaly_lookback_days
        threshold = settings.anomaly_threshold if threshold is None else threshold

        metrics = self._metrics_to_analyze(metric_slugs)
        if not metrics:
            return []

        with timer() as t:
            workers = max(1, min(self._max_workers, len(metrics)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anomaly") as pool:
                results = list(pool.map(
                    lambda m: self.analyze_metric(m, client_id, lookback_days, threshold),
                    metrics,
                ))

        events = [e for e in results if e is not None]
        logger.info("Anomaly run  client=%s  metrics=%d  events=%d  %.0f ms",
                    client_id, len(metrics), len(events), t["elapsed_ms"])

        if events and self._store is not None:
            try:
                self._store.save_events(client_id, events)
            except Exception:
                logger.exception("Failed to store anomaly events -- returning them unsaved")

        return sort_by_severity(events)
