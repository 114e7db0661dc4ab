"""
Conversation context -- folds each turn's intent into the thread state.

Contexts are values: every merge returns a new ``ConversationContext`` and
leaves its input untouched.  Callers must serialise merges for the same
thread; nothing here locks.
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from src.engine.intent import (
    Comparison,
    IntentFilter,
    MetricRef,
    QueryIntent,
    SortSpec,
    TimeRange,
)


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_index: int
    intent_type: str
    metric_slug: str = ""
    user_message: str = ""


class ConversationContext(BaseModel):
    """Accumulated per-thread state."""

    model_config = ConfigDict(frozen=True)

    metric: MetricRef | None = None
    dimensions: list[str] = Field(default_factory=list)
    filters: list[IntentFilter] = Field(default_factory=list)  # unique by field
    time_range: TimeRange | None = None
    comparison: Comparison | None = None
    chart_type: str | None = None
    sort: SortSpec | None = None
    history: list[HistoryEntry] = Field(default_factory=list)


def create_empty_context() -> ConversationContext:
    return ConversationContext()


def _upsert_filters(
    existing: list[IntentFilter],
    incoming: list[IntentFilter],
) -> list[IntentFilter]:
    merged = list(existing)
    for new in incoming:
        for i, f in enumerate(merged):
            if f.field == new.field:
                merged[i] = new
                break
        else:
            merged.append(new)
    return merged


def merge_context(
    current: ConversationContext,
    intent: QueryIntent,
    turn_index: int,
    user_message: str = "",
) -> ConversationContext:
    """Return the context that results from applying *intent* to *current*.

    - query / new_topic: replace the whole topic
    - refine: patch populated fields; filters are upserted by field
    - compare: replace comparison (and time range when given)
    - drill_down: no change beyond the history record
    """
    updates: dict = {}

    if intent.intent_type in ("query", "new_topic"):
        updates = {
            "metric": intent.metric,
            "dimensions": list(intent.dimensions),
            "filters": list(intent.filters),
            "time_range": intent.time_range,
            "comparison": intent.comparison,
            "chart_type": intent.chart_type,
            "sort": intent.sort,
        }

    elif intent.intent_type == "refine":
        if intent.metric is not None and intent.metric.slug:
            updates["metric"] = intent.metric
        if intent.dimensions:
            updates["dimensions"] = list(intent.dimensions)
        if intent.filters:
            updates["filters"] = _upsert_filters(current.filters, intent.filters)
        if intent.time_range is not None:
            updates["time_range"] = intent.time_range
        if intent.chart_type:
            updates["chart_type"] = intent.chart_type
        if intent.sort is not None:
            updates["sort"] = intent.sort

    elif intent.intent_type == "compare":
        updates["comparison"] = intent.comparison
        if intent.time_range is not None:
            updates["time_range"] = intent.time_range

    metric_slug = intent.metric_slug or (current.metric.slug if current.metric else "")
    updates["history"] = [
        *current.history,
        HistoryEntry(
            turn_index=turn_index,
            intent_type=intent.intent_type,
            metric_slug=metric_slug,
            user_message=user_message,
        ),
    ]
    return current.model_copy(update=updates)


def to_effective_intent(context: ConversationContext, intent: QueryIntent) -> QueryIntent:
    """The intent actually executed for this turn: context fields, plus the
    turn's own limit / assumptions / confidence."""
    return QueryIntent(
        intent_type=intent.intent_type,
        metric=context.metric,
        dimensions=list(context.dimensions),
        filters=list(context.filters),
        time_range=context.time_range,
        comparison=context.comparison,
        chart_type=context.chart_type,
        sort=context.sort,
        limit=intent.limit,
        assumptions=list(intent.assumptions),
        confidence=intent.confidence,
    )
