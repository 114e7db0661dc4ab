"""
Unit tests -- conversation context merging.
"""
from datetime import date

from src.engine.context_manager import create_empty_context, merge_context, to_effective_intent
from src.engine.intent import QueryIntent

_JAN = {"type": "relative", "value": "last_30_days", "start": date(2024, 1, 1), "end": date(2024, 1, 30)}
_FEB = {"type": "absolute", "value": "custom", "start": date(2024, 2, 1), "end": date(2024, 2, 29)}


def _query(**overrides) -> QueryIntent:
    base = {
        "intent_type": "query",
        "metric": {"slug": "sla_breach_rate", "display_name": "SLA Breach Rate"},
        "dimensions": ["adjuster"],
        "filters": [{"field": "peril", "operator": "eq", "value": "wind"}],
        "time_range": _JAN,
        "chart_type": "bar",
    }
    base.update(overrides)
    return QueryIntent(**base)


def _started():
    return merge_context(create_empty_context(), _query(), 0, "sla breach by adjuster")


def test_empty_context():
    ctx = create_empty_context()
    assert ctx.metric is None
    assert ctx.dimensions == []
    assert ctx.history == []


def test_query_sets_everything():
    ctx = _started()
    assert ctx.metric.slug == "sla_breach_rate"
    assert ctx.dimensions == ["adjuster"]
    assert [f.field for f in ctx.filters] == ["peril"]
    assert ctx.time_range.start == date(2024, 1, 1)
    assert ctx.chart_type == "bar"
    assert len(ctx.history) == 1
    assert ctx.history[0].user_message == "sla breach by adjuster"


def test_merge_does_not_mutate_input():
    ctx = _started()
    merge_context(ctx, _query(intent_type="new_topic", metric={"slug": "issue_rate"}), 1)
    assert ctx.metric.slug == "sla_breach_rate"
    assert len(ctx.history) == 1


def test_new_topic_replaces_topic():
    ctx = merge_context(
        _started(),
        QueryIntent(intent_type="new_topic", metric={"slug": "claims_received"}, time_range=_FEB),
        1,
    )
    assert ctx.metric.slug == "claims_received"
    assert ctx.dimensions == []
    assert ctx.filters == []
    assert ctx.chart_type is None
    assert [h.intent_type for h in ctx.history] == ["query", "new_topic"]


def test_query_and_new_topic_are_idempotent():
    for intent in (_query(), _query(intent_type="new_topic", metric={"slug": "issue_rate"})):
        once = merge_context(create_empty_context(), intent, 0)
        twice = merge_context(once, intent, 1)
        assert twice.model_dump(exclude={"history"}) == once.model_dump(exclude={"history"})
        assert len(twice.history) == 2


def test_refine_upserts_filters_by_field():
    refine = QueryIntent(
        intent_type="refine",
        filters=[
            {"field": "peril", "operator": "eq", "value": "hail"},
            {"field": "region", "operator": "eq", "value": "West"},
        ],
    )
    ctx = merge_context(_started(), refine, 1)
    assert [(f.field, f.value) for f in ctx.filters] == [("peril", "hail"), ("region", "West")]
    # untouched fields survive
    assert ctx.metric.slug == "sla_breach_rate"
    assert ctx.dimensions == ["adjuster"]
    assert ctx.time_range.value == "last_30_days"


def test_refine_patches_only_populated_fields():
    ctx = merge_context(_started(), QueryIntent(intent_type="refine", time_range=_FEB), 1)
    assert ctx.time_range.value == "custom"
    assert ctx.dimensions == ["adjuster"]
    assert ctx.chart_type == "bar"
    assert len(ctx.filters) == 1


def test_refine_history_uses_context_metric():
    ctx = merge_context(_started(), QueryIntent(intent_type="refine", dimensions=["peril"]), 1)
    assert ctx.history[-1].metric_slug == "sla_breach_rate"
    assert ctx.dimensions == ["peril"]


def test_compare_sets_comparison_only():
    compare = QueryIntent(intent_type="compare", comparison={"offset": "prior_year"})
    ctx = merge_context(_started(), compare, 1)
    assert ctx.comparison.offset == "prior_year"
    assert ctx.time_range.value == "last_30_days"
    assert ctx.dimensions == ["adjuster"]


def test_compare_with_time_range():
    compare = QueryIntent(intent_type="compare", comparison={}, time_range=_FEB)
    ctx = merge_context(_started(), compare, 1)
    assert ctx.comparison.offset == "previous_period"
    assert ctx.time_range.value == "custom"


def test_drill_down_only_records_history():
    start = _started()
    ctx = merge_context(start, QueryIntent(intent_type="drill_down", dimensions=["region"]), 1)
    assert ctx.dimensions == ["adjuster"]
    assert ctx.metric == start.metric
    assert len(ctx.history) == 2


def test_effective_intent_takes_turn_limit():
    ctx = _started()
    turn = QueryIntent(intent_type="refine", limit=5, confidence=0.7)
    effective = to_effective_intent(merge_context(ctx, turn, 1), turn)
    assert effective.metric_slug == "sla_breach_rate"
    assert effective.limit == 5
    assert effective.confidence == 0.7
    assert effective.intent_type == "refine"
    assert effective.dimensions == ["adjuster"]
