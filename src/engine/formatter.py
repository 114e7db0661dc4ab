"""
Result formatting -- reshapes aggregation rows into chart-ready series.

Rows come from the query compiler as ``{"dim_0": ..., "value": ...}``.
Labels join every ``dim_<i>`` column with " / "; time-bucket columns are
rendered as human labels ("Jan 2024", "Week of Jan 8", "Jan 8").
Percentage metrics arrive as fractions and are shown as percents here,
never earlier.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from src.core.logging import get_logger
from src.engine.intent import TIME_DIMENSIONS, QueryIntent
from src.engine.query_compiler import result_dimensions
from src.governance.metric_catalog import MetricDefinition

logger = get_logger(__name__)

_MONTH_NAMES = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

UNIT_SYMBOLS = {
    "percentage": "%",
    "dollars": "$",
    "count": "count",
    "days": "days",
    "hours": "hours",
    "milliseconds": "ms",
    "tokens": "tokens",
}

CURRENT_PERIOD_LABEL = "Current Period"
UNKNOWN_LABEL = "Unknown"


@dataclass
class Dataset:
    label: str
    values: list[float]
    unit: str

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "values": self.values, "unit": self.unit}


@dataclass
class ChartData:
    """What the UI renders for one answer."""
    type: str
    title: str
    labels: list[str] = field(default_factory=list)
    datasets: list[Dataset] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": {
                "labels": self.labels,
                "datasets": [d.to_dict() for d in self.datasets],
            },
            "title": self.title,
        }


# ── Values ──────────────────────────────────────────────

def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _round_half_up(value: float, places: int = 2) -> float:
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def display_value(value: Any, unit: str) -> float:
    """Round for display; fractions become percents for percentage metrics."""
    v = _to_float(value)
    if unit == "percentage":
        return math.floor(v * 10000 + 0.5) / 100
    return _round_half_up(v)


def unit_symbol(unit: str) -> str:
    return UNIT_SYMBOLS.get(unit, unit or "count")


# ── Labels ──────────────────────────────────────────────

def format_date_label(value: str, grain: str) -> str:
    d = date.fromisoformat(value[:10])
    month = _MONTH_NAMES[d.month - 1]
    if grain == "month":
        return f"{month} {d.year}"
    if grain == "week":
        return f"Week of {month} {d.day}"
    return f"{month} {d.day}"


def _dim_keys(row: dict[str, Any]) -> list[str]:
    return sorted((k for k in row if k.startswith("dim_")), key=lambda k: int(k[4:]))


def _cell_label(value: Any, dimension: str | None) -> str:
    if value is None:
        return UNKNOWN_LABEL
    text = value.isoformat() if isinstance(value, date) else str(value)
    if dimension in TIME_DIMENSIONS and len(text) >= 10 and text[4] == "-" and text[7] == "-":
        try:
            return format_date_label(text, dimension)
        except ValueError:
            return text
    return text


def row_label(row: dict[str, Any], dimensions: list[str], fallback: str) -> str:
    keys = _dim_keys(row)
    if not keys:
        return fallback
    parts = []
    for i, key in enumerate(keys):
        dimension = dimensions[i] if i < len(dimensions) else None
        parts.append(_cell_label(row[key], dimension))
    return " / ".join(parts)


def _title(metric: MetricDefinition, intent: QueryIntent, suffix: str = "") -> str:
    parts = [metric.display_name + suffix]
    if intent.dimensions:
        parts.append("by " + ", ".join(d.replace("_", " ").title() for d in intent.dimensions))
    if intent.time_range is not None and intent.time_range.value:
        parts.append(f"({intent.time_range.value.replace('_', ' ')})")
    return " ".join(parts)


# ── Public API ──────────────────────────────────────────

def format_chart_data(
    rows: list[dict[str, Any]],
    intent: QueryIntent,
    metric: MetricDefinition,
) -> ChartData:
    """One label and one value per row, a single dataset for the metric."""
    dims = result_dimensions(metric.slug, intent.dimensions)
    labels = [row_label(r, dims, metric.display_name) for r in rows]
    values = [display_value(r.get("value"), metric.unit) for r in rows]
    return ChartData(
        type=intent.chart_type or metric.default_chart_type,
        title=_title(metric, intent),
        labels=labels,
        datasets=[Dataset(label=metric.display_name, values=values, unit=unit_symbol(metric.unit))],
    )


def _mean(rows: list[dict[str, Any]]) -> float:
    if not rows:
        return 0.0
    return sum(_to_float(r.get("value")) for r in rows) / len(rows)


def format_chart_data_for_comparison(
    current_rows: list[dict[str, Any]],
    comparison_rows: list[dict[str, Any]],
    intent: QueryIntent,
    metric: MetricDefinition,
    comparison_label: str = "Previous Period",
) -> ChartData:
    """Overlay the comparison period on the current one.

    With dimensions, rows are aligned on their labels (sorted union, gaps
    are 0) as two datasets.  Without, both periods collapse to a single
    two-point series: current vs comparison.
    """
    unit = unit_symbol(metric.unit)
    title = _title(metric, intent, suffix=f" vs {comparison_label}")
    chart_type = intent.chart_type or "bar"
    has_dims = any(_dim_keys(r) for r in current_rows + comparison_rows)

    if has_dims:
        dims = result_dimensions(metric.slug, intent.dimensions)
        current = {row_label(r, dims, metric.display_name): display_value(r.get("value"), metric.unit)
                   for r in current_rows}
        prior = {row_label(r, dims, metric.display_name): display_value(r.get("value"), metric.unit)
                 for r in comparison_rows}
        labels = sorted(set(current) | set(prior))
        return ChartData(
            type=chart_type,
            title=title,
            labels=labels,
            datasets=[
                Dataset(CURRENT_PERIOD_LABEL, [current.get(label, 0.0) for label in labels], unit),
                Dataset(comparison_label, [prior.get(label, 0.0) for label in labels], unit),
            ],
        )

    values = [
        display_value(_mean(current_rows), metric.unit),
        display_value(_mean(comparison_rows), metric.unit),
    ]
    return ChartData(
        type=chart_type,
        title=title,
        labels=[CURRENT_PERIOD_LABEL, comparison_label],
        datasets=[Dataset(metric.display_name, values, unit)],
    )
