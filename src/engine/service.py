"""
Query engine service -- one conversational turn, end to end.

merge context -> validate -> cache lookup -> (miss) compile + execute +
cache store -> optional comparison run -> format -> follow-ups.

Validation failures leave the caller's context untouched; query failures
come back as a generic ``query_error`` with the driver error only in the
logs.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable

from src.core.config import get_settings
from src.core.logging import get_logger
from src.engine.cache import QueryCache, get_cache
from src.engine.comparison import comparison_intent, comparison_label, resolve_comparison_range
from src.engine.context_manager import (
    ConversationContext,
    create_empty_context,
    merge_context,
    to_effective_intent,
)
from src.engine.explainer import EngineError, query_error, unsupported_error
from src.engine.formatter import ChartData, format_chart_data, format_chart_data_for_comparison
from src.engine.intent import QueryIntent
from src.engine.query_compiler import (
    CompileError,
    Executor,
    QueryExecutionError,
    UnknownMetricError,
    run_metric_query,
)
from src.engine.suggestions import follow_up_suggestions
from src.governance.metric_catalog import MetricCatalog, MetricDefinition, load_metric_catalog
from src.governance.validator import ValidationResult, validate_intent

logger = get_logger(__name__)


@dataclass
class AskResult:
    success: bool
    context: ConversationContext
    intent: QueryIntent | None = None
    chart: ChartData | None = None
    error: EngineError | None = None
    suggestions: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "chart": self.chart.to_dict() if self.chart else None,
            "error": self.error.to_dict() if self.error else None,
            "suggestions": self.suggestions,
            "metadata": self.metadata,
            "intent": self.intent.model_dump(mode="json") if self.intent else None,
            "context": self.context.model_dump(mode="json"),
        }


@dataclass(frozen=True)
class _Rows:
    rows: list[dict[str, Any]]
    query_ms: float
    cache_hit: bool


class QueryEngine:
    """Runs conversational turns against the metric catalog and the database.

    Parameters
    ----------
    catalog_loader : callable
        Returns the current ``MetricCatalog`` (TTL-cached by default).
    cache : QueryCache, optional
        Result cache; the process-wide cache when None.
    executor : callable, optional
        ``(sql, params, timeout_ms=...) -> rows``; the read-only Postgres
        executor when None.
    """

    def __init__(
        self,
        catalog_loader: Callable[[], MetricCatalog] = load_metric_catalog,
        cache: QueryCache | None = None,
        executor: Executor | None = None,
        cache_ttl_minutes: float | None = None,
    ):
        self._catalog_loader = catalog_loader
        self._cache = cache
        self._executor = executor
        self._ttl = cache_ttl_minutes

    @property
    def cache(self) -> QueryCache:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    # ── Validation ──────────────────────────────────────

    def validate(
        self,
        intent: QueryIntent,
        context: ConversationContext | None = None,
    ) -> ValidationResult:
        """Dry run: validate the effective intent this turn would execute."""
        context = context or create_empty_context()
        merged = merge_context(context, intent, len(context.history))
        return validate_intent(to_effective_intent(merged, intent), self._catalog_loader())

    # ── Execution ───────────────────────────────────────

    def _cache_key(self, metric: MetricDefinition, intent: QueryIntent, client_id: str) -> str:
        filters = {
            "filters": intent.filters,
            "sort": intent.sort,
            "limit": intent.limit,
        }
        time_token = intent.time_range.cache_token() if intent.time_range else None
        return self.cache.make_key(metric.slug, client_id, filters, time_token, intent.dimensions)

    def _fetch_rows(self, metric: MetricDefinition, intent: QueryIntent, client_id: str) -> _Rows:
        key = self._cache_key(metric, intent, client_id)
        cached = self.cache.get(key)
        if cached is not None:
            return _Rows(rows=cached, query_ms=0.0, cache_hit=True)

        result = run_metric_query(metric, intent, client_id, executor=self._executor)
        ttl = self._ttl if self._ttl is not None else get_settings().cache_ttl_minutes
        self.cache.set(key, metric.slug, client_id, result.rows, ttl)
        return _Rows(rows=result.rows, query_ms=result.query_ms, cache_hit=False)

    def ask(
        self,
        intent: QueryIntent,
        client_id: str,
        context: ConversationContext | None = None,
        turn_index: int | None = None,
        user_message: str = "",
    ) -> AskResult:
        """Answer one turn.  Never raises for validation or query failures."""
        t0 = time.perf_counter()
        context = context or create_empty_context()
        if turn_index is None:
            turn_index = len(context.history)

        merged = merge_context(context, intent, turn_index, user_message)
        effective = to_effective_intent(merged, intent)
        catalog = self._catalog_loader()

        logger.info("QueryEngine.ask | client=%s | turn=%d | intent=%s | metric=%s",
                    client_id, turn_index, intent.intent_type, effective.metric_slug)

        validation = validate_intent(effective, catalog)
        if not validation.valid:
            logger.info("Validation failed: %s", validation.errors)
            requested = effective.metric_slug if validation.metric is None else None
            return AskResult(
                success=False,
                context=context,
                intent=effective,
                error=unsupported_error(validation.errors, catalog, requested),
            )
        metric = validation.metric

        try:
            current = self._fetch_rows(metric, effective, client_id)
        except (UnknownMetricError, CompileError) as exc:
            logger.warning("Cannot compile %s: %s", metric.slug, exc)
            return AskResult(
                success=False,
                context=context,
                intent=effective,
                error=unsupported_error([str(exc)], catalog),
            )
        except QueryExecutionError:
            return AskResult(success=False, context=context, intent=effective, error=query_error())

        metadata: dict[str, Any] = {
            "metric_slug": metric.slug,
            "record_count": len(current.rows),
            "query_ms": current.query_ms,
            "cache_hit": current.cache_hit,
            "filters": [f.model_dump(mode="json") for f in effective.filters],
            "time_range": effective.time_range.model_dump(mode="json") if effective.time_range else None,
            "assumptions": [a.model_dump(mode="json") for a in effective.assumptions],
        }

        chart = self._chart(metric, effective, client_id, current, metadata)

        metadata["total_ms"] = round((time.perf_counter() - t0) * 1000, 2)
        return AskResult(
            success=True,
            context=merged,
            intent=effective,
            chart=chart,
            suggestions=follow_up_suggestions(effective, metric),
            metadata=metadata,
        )

    def _chart(
        self,
        metric: MetricDefinition,
        intent: QueryIntent,
        client_id: str,
        current: _Rows,
        metadata: dict[str, Any],
    ) -> ChartData:
        if intent.comparison is None or intent.time_range is None:
            return format_chart_data(current.rows, intent, metric)

        start, end = resolve_comparison_range(
            intent.time_range.start, intent.time_range.end, intent.comparison.offset
        )
        label = comparison_label(intent.comparison.offset)
        try:
            prior = self._fetch_rows(metric, comparison_intent(intent, start, end), client_id)
        except (CompileError, QueryExecutionError) as exc:
            logger.warning("Comparison query failed for %s, showing current period only: %s",
                           metric.slug, exc)
            metadata["comparison_error"] = True
            return format_chart_data(current.rows, intent, metric)

        metadata["comparison"] = {
            "label": label,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "record_count": len(prior.rows),
            "cache_hit": prior.cache_hit,
        }
        return format_chart_data_for_comparison(current.rows, prior.rows, intent, metric, label)


@lru_cache
def get_query_engine() -> QueryEngine:
    return QueryEngine()
