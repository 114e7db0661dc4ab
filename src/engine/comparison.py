"""
Comparison period resolution.

Offsets come in two grammars:
  - semantic: previous_period (same span, immediately prior),
    prior_month (30 days back), prior_year (365 days back)
  - numeric: "<N>_<unit>" such as "-1_month" or "+2_weeks", where
    day=1, week=7, month=30, quarter=90, year=365 days

Month / quarter / year are fixed day counts, not calendar arithmetic.
Anything unrecognised shifts back by the current period's own span.
"""
from __future__ import annotations

import re
from datetime import date, timedelta

from src.engine.intent import QueryIntent

_UNIT_DAYS = {"day": 1, "week": 7, "month": 30, "quarter": 90, "year": 365}

_NUMERIC_OFFSET = re.compile(r"^([+-]?\d+)_(day|week|month|quarter|year)s?$", re.IGNORECASE)

_SEMANTIC_DAYS = {"prior_month": 30, "prior_year": 365}

_LABELS = {
    "previous_period": "Previous Period",
    "prior_month": "Prior Month",
    "prior_year": "Prior Year",
}


def _shift(start: date, end: date, days: int) -> tuple[date, date]:
    delta = timedelta(days=days)
    return start + delta, end + delta


def resolve_comparison_range(start: date, end: date, offset: str) -> tuple[date, date]:
    """Return ``(start, end)`` of the comparison period, both inclusive."""
    span = (end - start).days + 1
    key = (offset or "").strip().lower()

    if key in _SEMANTIC_DAYS:
        return _shift(start, end, -_SEMANTIC_DAYS[key])

    m = _NUMERIC_OFFSET.match(key)
    if m:
        n = int(m.group(1))
        return _shift(start, end, n * _UNIT_DAYS[m.group(2).lower()])

    # previous_period and anything unrecognised
    return _shift(start, end, -span)


def comparison_label(offset: str | None) -> str:
    key = (offset or "").strip().lower()
    if key in _LABELS:
        return _LABELS[key]
    m = _NUMERIC_OFFSET.match(key)
    if m:
        n = int(m.group(1))
        unit = m.group(2).title() + ("s" if abs(n) != 1 else "")
        direction = "Later" if n > 0 else "Earlier"
        return f"{abs(n)} {unit} {direction}"
    return _LABELS["previous_period"]


def comparison_intent(intent: QueryIntent, start: date, end: date) -> QueryIntent:
    """Copy of *intent* pointed at the comparison period, without its own comparison."""
    time_range = None
    if intent.time_range is not None:
        time_range = intent.time_range.model_copy(update={"start": start, "end": end})
    return intent.model_copy(update={"time_range": time_range, "comparison": None})
