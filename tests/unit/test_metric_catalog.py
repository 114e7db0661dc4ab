"""
Unit tests -- metric catalog: YAML parsing, look-ups and the TTL cache.
"""
import pytest

from src.engine.query_compiler import MetricSlug
from src.governance import metric_catalog
from src.governance.metric_catalog import (
    METRIC_UNITS,
    MetricCatalog,
    invalidate_catalog_cache,
    load_metric_catalog,
    parse_catalog,
    read_catalog_file,
)


@pytest.fixture(scope="module")
def catalog() -> MetricCatalog:
    return read_catalog_file()


# ── Shipped catalog ──────────────────────────────────────

def test_catalog_loads(catalog):
    assert catalog.version == 1
    assert len(catalog.metrics) == 31


def test_every_catalog_metric_has_a_query():
    slugs = set(read_catalog_file().metrics)
    assert slugs == {s.value for s in MetricSlug}


def test_units_are_known(catalog):
    for m in catalog.metrics.values():
        assert m.unit in METRIC_UNITS, m.slug


def test_sla_breach_rate_definition(catalog):
    m = catalog.metric("sla_breach_rate")
    assert m.display_name == "SLA Breach Rate"
    assert m.unit == "percentage"
    assert m.default_chart_type == "line"
    assert "adjuster" in m.allowed_dimensions
    assert m.allowed_time_grains == ("day", "week", "month")


def test_unknown_metric_returns_none(catalog):
    assert catalog.metric("revenue") is None


def test_active_slugs_in_catalog_order(catalog):
    slugs = catalog.get_metric_slugs()
    assert slugs[0] == "claims_received"
    assert len(slugs) == len(catalog.list_active_metrics())


def test_metrics_list_shape(catalog):
    items = catalog.get_metrics_list()
    item = next(i for i in items if i["slug"] == "queue_depth")
    assert item["allowed_dimensions"] == sorted(item["allowed_dimensions"])
    assert set(item) == {
        "slug", "display_name", "category", "unit",
        "default_chart_type", "allowed_dimensions", "description",
    }


def test_categories_group_slugs(catalog):
    groups = catalog.get_categories()
    assert "claims_received" in groups["throughput"]
    assert "sla_breach_rate" in groups["speed_sla"]
    assert sum(len(v) for v in groups.values()) == 31


# ── Parsing ──────────────────────────────────────────────

def _raw(*metrics, **extra):
    data = {"version": 3, "defaults": {"default_chart_type": "table",
                                       "allowed_time_grains": ["week"]}}
    data["metrics"] = list(metrics)
    data.update(extra)
    return data


def test_defaults_applied():
    cat = parse_catalog(_raw({"slug": "x", "unit": "count"}))
    m = cat.metric("x")
    assert cat.version == 3
    assert m.display_name == "x"
    assert m.default_chart_type == "table"
    assert m.allowed_time_grains == ("week",)
    assert m.allowed_dimensions == frozenset()
    assert m.is_active is True


def test_inactive_metric_excluded_from_active_lists():
    cat = parse_catalog(_raw(
        {"slug": "a", "unit": "count"},
        {"slug": "b", "unit": "count", "is_active": False},
    ))
    assert cat.get_metric_slugs() == ["a"]
    assert cat.get_metric_slugs(active_only=False) == ["a", "b"]
    assert [m["slug"] for m in cat.get_metrics_list()] == ["a"]


def test_unknown_unit_rejected():
    with pytest.raises(ValueError, match="unknown unit"):
        parse_catalog(_raw({"slug": "a", "unit": "furlongs"}))


def test_duplicate_slug_rejected():
    with pytest.raises(ValueError, match="Duplicate"):
        parse_catalog(_raw({"slug": "a", "unit": "count"}, {"slug": "a", "unit": "days"}))


# ── TTL cache ────────────────────────────────────────────

def test_load_is_cached():
    invalidate_catalog_cache()
    first = load_metric_catalog()
    assert load_metric_catalog() is first


def test_force_refresh_rereads():
    first = load_metric_catalog()
    assert load_metric_catalog(force_refresh=True) is not first


def test_invalidate_rereads():
    first = load_metric_catalog()
    invalidate_catalog_cache()
    assert load_metric_catalog() is not first


def test_expired_ttl_rereads(monkeypatch):
    first = load_metric_catalog(force_refresh=True)
    monkeypatch.setattr(metric_catalog, "_loaded_at", -1e12)
    assert load_metric_catalog() is not first
