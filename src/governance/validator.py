"""
Validates a QueryIntent against the metric catalog.

Checks performed (all violations are collected, none short-circuit):
  1. A metric slug is present
  2. The slug names a catalog metric
  3. The metric is active
  4. Every requested dimension is allowed for the metric
  5. Every filter uses a known field and operator, with a value shaped
     for that operator (list for in / not_in, pair for between)
  6. The chart type, if given, is a known chart type
  7. A time range is present with both bounds, start not after end
"""
from __future__ import annotations

from dataclasses import dataclass, field

from src.engine.intent import CHART_TYPES, FILTER_FIELDS, FILTER_OPERATORS, QueryIntent
from src.governance.metric_catalog import MetricCatalog, MetricDefinition, load_metric_catalog

_LIST_OPERATORS = {"in", "not_in"}


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    metric: MetricDefinition | None = None


def _check_filters(intent: QueryIntent) -> list[str]:
    errors: list[str] = []
    for f in intent.filters:
        if f.field not in FILTER_FIELDS:
            errors.append(
                f"Invalid filter field '{f.field}'. "
                f"Valid fields: {', '.join(FILTER_FIELDS)}"
            )
        if f.operator not in FILTER_OPERATORS:
            errors.append(
                f"Invalid operator '{f.operator}'. "
                f"Valid: {', '.join(FILTER_OPERATORS)}"
            )
            continue

        if f.operator in _LIST_OPERATORS and isinstance(f.value, list) and not f.value:
            errors.append(f"Filter '{f.field}' has an empty value list.")
        elif f.operator == "between" and not (isinstance(f.value, list) and len(f.value) == 2):
            errors.append(f"Filter '{f.field}' with 'between' needs exactly two values.")
        elif f.operator not in _LIST_OPERATORS | {"between"} and isinstance(f.value, list):
            errors.append(f"Filter '{f.field}' with '{f.operator}' takes a single value.")
    return errors


def _check_time_range(intent: QueryIntent) -> list[str]:
    tr = intent.time_range
    if tr is None or tr.start is None or tr.end is None:
        return ["Time range must include start and end dates."]
    if tr.start > tr.end:
        return [f"Time range start ({tr.start}) is after its end ({tr.end})."]
    return []


def validate_intent(
    intent: QueryIntent,
    catalog: MetricCatalog | None = None,
) -> ValidationResult:
    """Validate *intent* against *catalog* (auto-loaded when None).

    Returns a ``ValidationResult``; ``errors`` is empty iff the intent is
    valid.  ``metric`` is set whenever the slug resolves, even if other
    checks fail, so callers can still shape suggestions.
    """
    if catalog is None:
        catalog = load_metric_catalog()

    errors: list[str] = []
    metric: MetricDefinition | None = None

    slug = intent.metric_slug
    if not slug:
        errors.append("Missing metric slug.")
    else:
        metric = catalog.metric(slug)
        if metric is None:
            errors.append(
                f"Unknown metric '{slug}'. "
                f"Available: {', '.join(catalog.get_metric_slugs())}"
            )
        elif not metric.is_active:
            errors.append(f"Metric '{slug}' is not active.")

    if metric is not None:
        allowed = sorted(metric.allowed_dimensions)
        for dim in intent.dimensions:
            if dim not in metric.allowed_dimensions:
                errors.append(
                    f"Dimension '{dim}' not allowed for metric '{metric.slug}'. "
                    f"Allowed: {', '.join(allowed) or '(none)'}"
                )

    errors.extend(_check_filters(intent))

    if intent.chart_type and intent.chart_type not in CHART_TYPES:
        errors.append(
            f"Invalid chart type '{intent.chart_type}'. "
            f"Valid: {', '.join(CHART_TYPES)}"
        )

    errors.extend(_check_time_range(intent))

    return ValidationResult(valid=not errors, errors=errors, metric=metric)
