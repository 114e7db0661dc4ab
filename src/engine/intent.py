"""
QueryIntent -- the structured intermediate representation handed to the
engine by the (external) intent parser.

The models are deliberately permissive about vocabulary (operators, chart
types, filter fields are plain strings) so that the validator can report
every violation at once instead of pydantic rejecting the first one.
"""
from __future__ import annotations

from datetime import date
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

IntentType = Literal["query", "refine", "drill_down", "compare", "new_topic"]

FilterValue = Union[str, int, float, bool, list[Union[str, int, float, bool]]]

# ── Vocabulary ───────────────────────────────────────────

FILTER_OPERATORS: tuple[str, ...] = (
    "eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "between",
)

CHART_TYPES: tuple[str, ...] = (
    "line", "bar", "stacked_bar", "area", "pie", "table", "heatmap", "waterfall",
)

FILTER_FIELDS: tuple[str, ...] = (
    "peril", "severity", "region", "status", "current_stage",
    "sla_breached", "state_code", "adjuster", "team", "issue_type",
    "stage", "model", "decision_type", "cat_code", "coverage_type",
    "policy_type", "expense_category", "billing_type", "vendor_name",
)

TIME_DIMENSIONS: tuple[str, ...] = ("day", "week", "month")


class MetricRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    slug: str
    display_name: str = ""


class IntentFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: str
    value: FilterValue


class TimeRange(BaseModel):
    """Calendar-date range; both bounds are inclusive."""

    model_config = ConfigDict(frozen=True)

    type: str = "relative"  # relative | absolute
    value: str = ""  # e.g. "last_30_days", "custom"
    start: date | None = None
    end: date | None = None

    def cache_token(self) -> str:
        """Stable token identifying this range for cache keys."""
        start = self.start.isoformat() if self.start else ""
        end = self.end.isoformat() if self.end else ""
        return f"{self.value or 'custom'}|{start}|{end}"


class Comparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = "period"
    offset: str = "previous_period"


class SortSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str = "value"
    direction: str = "desc"


class Assumption(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    assumed_value: str
    label: str = ""


class QueryIntent(BaseModel):
    """One turn's structured analytics question."""

    model_config = ConfigDict(frozen=True)

    intent_type: IntentType = "query"
    metric: MetricRef | None = None
    dimensions: list[str] = Field(default_factory=list, description="Ordered group-by dimensions")
    filters: list[IntentFilter] = Field(default_factory=list)
    time_range: TimeRange | None = None
    comparison: Comparison | None = None
    chart_type: str | None = None
    sort: SortSpec | None = None
    limit: int | None = Field(None, ge=1)
    assumptions: list[Assumption] = Field(default_factory=list)
    confidence: float = Field(1.0, ge=0.0, le=1.0)

    @property
    def metric_slug(self) -> str:
        return self.metric.slug if self.metric else ""
