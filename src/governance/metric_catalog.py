"""
Loads, parses, and caches the governed metric catalog YAML.

The catalog is the single source of truth for:
  - which metrics exist and whether they are active
  - the unit each metric reports in (drives display rounding)
  - the dimensions and time grains a question may group by
  - the default chart type for each metric

The parsed catalog is held behind a short TTL cache; a miss simply
re-reads the YAML, so concurrent refreshes are harmless.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_CATALOG_PATH = Path(__file__).resolve().parents[2] / "semantic_layer" / "metric_catalog.yml"

METRIC_UNITS: frozenset[str] = frozenset(
    {"count", "percentage", "dollars", "days", "hours", "milliseconds", "tokens"}
)


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class MetricDefinition:
    slug: str
    display_name: str
    category: str
    unit: str
    default_chart_type: str = "bar"
    allowed_dimensions: frozenset[str] = frozenset()
    allowed_time_grains: tuple[str, ...] = ("day", "week", "month")
    description: str = ""
    calculation: str = ""
    is_active: bool = True


@dataclass
class MetricCatalog:
    """Snapshot of the metric catalog."""

    version: int
    metrics: dict[str, MetricDefinition] = field(default_factory=dict)  # keyed by slug

    # ── Convenience look-ups ─────────────────────────

    def metric(self, slug: str) -> MetricDefinition | None:
        return self.metrics.get(slug)

    def list_active_metrics(self) -> list[MetricDefinition]:
        return [m for m in self.metrics.values() if m.is_active]

    def get_metric_slugs(self, active_only: bool = True) -> list[str]:
        if active_only:
            return [m.slug for m in self.list_active_metrics()]
        return list(self.metrics.keys())

    def get_metrics_list(self) -> list[dict[str, Any]]:
        """Return active metrics as a list of dicts (for API responses)."""
        result = []
        for m in self.list_active_metrics():
            result.append({
                "slug": m.slug,
                "display_name": m.display_name,
                "category": m.category,
                "unit": m.unit,
                "default_chart_type": m.default_chart_type,
                "allowed_dimensions": sorted(m.allowed_dimensions),
                "description": m.description,
            })
        return result

    def get_categories(self) -> dict[str, list[str]]:
        """Active metric slugs grouped by category, in catalog order."""
        grouped: dict[str, list[str]] = {}
        for m in self.list_active_metrics():
            grouped.setdefault(m.category, []).append(m.slug)
        return grouped


# ── Parsing ──────────────────────────────────────────────

def _parse_metric(raw: dict[str, Any], defaults: dict[str, Any]) -> MetricDefinition:
    unit = raw.get("unit", "count")
    if unit not in METRIC_UNITS:
        raise ValueError(f"Metric '{raw.get('slug')}' has unknown unit '{unit}'")
    return MetricDefinition(
        slug=raw["slug"],
        display_name=raw.get("display_name") or raw["slug"],
        category=raw.get("category", ""),
        unit=unit,
        default_chart_type=raw.get("default_chart_type") or defaults.get("default_chart_type", "bar"),
        allowed_dimensions=frozenset(raw.get("allowed_dimensions") or []),
        allowed_time_grains=tuple(
            raw.get("allowed_time_grains") or defaults.get("allowed_time_grains") or ()
        ),
        description=raw.get("description", ""),
        calculation=raw.get("calculation", ""),
        is_active=raw.get("is_active", True),
    )


def parse_catalog(raw_yaml: dict[str, Any]) -> MetricCatalog:
    defaults = raw_yaml.get("defaults") or {}
    metrics: dict[str, MetricDefinition] = {}
    for raw in raw_yaml.get("metrics", []):
        m = _parse_metric(raw, defaults)
        if m.slug in metrics:
            raise ValueError(f"Duplicate metric slug in catalog: {m.slug}")
        metrics[m.slug] = m
    return MetricCatalog(version=raw_yaml.get("version", 1), metrics=metrics)


def read_catalog_file(path: Path | None = None) -> MetricCatalog:
    with open(path or _CATALOG_PATH) as f:
        raw = yaml.safe_load(f)
    return parse_catalog(raw or {})


# ── TTL cache ────────────────────────────────────────────

_lock = threading.Lock()
_cached: MetricCatalog | None = None
_loaded_at: float = 0.0


def load_metric_catalog(force_refresh: bool = False) -> MetricCatalog:
    """Return the catalog, re-reading the YAML once the TTL has lapsed."""
    global _cached, _loaded_at
    ttl = get_settings().catalog_ttl_seconds
    with _lock:
        now = time.monotonic()
        if not force_refresh and _cached is not None and now - _loaded_at < ttl:
            return _cached
        catalog = read_catalog_file()
        _cached, _loaded_at = catalog, now
    logger.info("Metric catalog loaded: %d metrics (%d active)",
                len(catalog.metrics), len(catalog.list_active_metrics()))
    return catalog


def invalidate_catalog_cache() -> None:
    global _cached, _loaded_at
    with _lock:
        _cached, _loaded_at = None, 0.0
