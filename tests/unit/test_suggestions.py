"""
Unit tests -- Metric suggestions and follow-up questions.
"""
from datetime import date

import pytest

from src.engine.intent import QueryIntent
from src.engine.suggestions import alternative_metric_names, follow_up_suggestions, suggest_metrics
from src.governance.metric_catalog import read_catalog_file


@pytest.fixture(scope="module")
def catalog():
    return read_catalog_file()


# ── suggest_metrics ──────────────────────────────────────

def test_partial_slug(catalog):
    results = suggest_metrics("cycle_time", catalog=catalog)
    assert results[0].slug == "cycle_time_e2e"


def test_spaced_name(catalog):
    results = suggest_metrics("sla breach", catalog=catalog)
    assert {s.slug for s in results[:2]} == {"sla_breach_rate", "sla_breach_count"}


def test_scores_descending(catalog):
    results = suggest_metrics("claims", catalog=catalog)
    scores = [s.score for s in results]
    assert scores == sorted(scores, reverse=True)


def test_top_k(catalog):
    assert len(suggest_metrics("claim", catalog=catalog, top_k=2)) <= 2


def test_gibberish_returns_nothing(catalog):
    assert suggest_metrics("zzzz", catalog=catalog) == []


def test_to_dict(catalog):
    d = suggest_metrics("queue_depth", catalog=catalog)[0].to_dict()
    assert d["slug"] == "queue_depth"
    assert d["display_name"] == "Queue Depth"
    assert 0 < d["score"] <= 1


# ── alternative_metric_names ─────────────────────────────

def test_alternatives_for_misspelling(catalog):
    assert "SLA Breach Rate" in alternative_metric_names("sla_breach", catalog)


def test_alternatives_default_to_catalog_order(catalog):
    assert alternative_metric_names(None, catalog) == [
        "Claims Received", "Claims In Progress", "Queue Depth", "Cycle Time (E2E)", "Stage Dwell Time",
    ]


# ── follow_up_suggestions ────────────────────────────────

def _intent(slug, **overrides) -> QueryIntent:
    base = {
        "metric": {"slug": slug},
        "time_range": {"value": "last_30_days", "start": date(2024, 1, 1), "end": date(2024, 1, 30)},
    }
    base.update(overrides)
    return QueryIntent(**base)


def test_follow_ups_offer_comparison_trend_and_breakdown(catalog):
    out = follow_up_suggestions(_intent("sla_breach_rate", dimensions=["adjuster"]),
                                catalog.metric("sla_breach_rate"))
    assert out == [
        "Compare SLA Breach Rate with the previous period",
        "Show SLA Breach Rate trend by day",
        "Break down SLA Breach Rate by peril",
    ]


def test_follow_ups_skip_time_when_already_trended(catalog):
    intent = _intent("sla_breach_rate", dimensions=["week"], comparison={"offset": "prior_year"})
    out = follow_up_suggestions(intent, catalog.metric("sla_breach_rate"))
    assert out == [
        "Break down SLA Breach Rate by adjuster",
        "Break down SLA Breach Rate by peril",
        "Break down SLA Breach Rate by region",
    ]


def test_follow_ups_fall_back_to_time_range(catalog):
    intent = _intent("model_mix", dimensions=["stage"], comparison={})
    assert follow_up_suggestions(intent, catalog.metric("model_mix")) == [
        "Show Model Mix for the last 90 days",
    ]


def test_follow_ups_deterministic(catalog):
    intent = _intent("claims_received", dimensions=["peril"])
    metric = catalog.metric("claims_received")
    assert follow_up_suggestions(intent, metric) == follow_up_suggestions(intent, metric)
