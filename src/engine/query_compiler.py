"""
Query compiler -- turns a validated (metric, intent, tenant) triple into a
parameterised aggregation query and runs it through the read-only executor.

Every metric slug maps to exactly one ``MetricQuery`` template.  Templates
share one WHERE assembler (tenant first, then time range, then the
intent's filters, then the metric's own conditions) and one
dimension-to-column map.  Request-derived values are always bound
parameters; the only literals written into SQL text are template
constants, and those go through ``quote_literal``.

Result rows have the shape ``{"dim_0": ..., "dim_1": ..., "value": ...}``.
Percentage metrics return fractions (0..1); conversion to percent is a
display concern handled by the formatter.
"""
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Mapping

from src.core.config import get_settings
from src.core.logging import get_logger
from src.engine.intent import TIME_DIMENSIONS, IntentFilter, QueryIntent
from src.governance.metric_catalog import MetricDefinition
from src.governance.sql_safety import check_sql_safety

logger = get_logger(__name__)

Executor = Callable[..., list[dict[str, Any]]]


# ── Errors ───────────────────────────────────────────────

class UnknownMetricError(ValueError):
    def __init__(self, slug: str):
        super().__init__(f"No query implementation for metric: {slug}")
        self.slug = slug


class CompileError(ValueError):
    """A dimension, filter or sort that cannot be expressed for this metric."""


class QueryExecutionError(RuntimeError):
    error_type = "query_error"

    def __init__(self, metric_slug: str, raw_error: str):
        super().__init__(f"Query failed for metric '{metric_slug}': {raw_error}")
        self.metric_slug = metric_slug
        self.raw_error = raw_error


# ── Literal escaping ─────────────────────────────────────

def quote_literal(value: str) -> str:
    """SQL string literal with embedded single quotes doubled."""
    return "'" + str(value).replace("'", "''") + "'"


def _literal_list(values: tuple[str, ...]) -> str:
    return ", ".join(quote_literal(v) for v in values)


# ── Metric slugs ─────────────────────────────────────────

class MetricSlug(str, Enum):
    CLAIMS_RECEIVED = "claims_received"
    CLAIMS_IN_PROGRESS = "claims_in_progress"
    QUEUE_DEPTH = "queue_depth"
    CYCLE_TIME_E2E = "cycle_time_e2e"
    STAGE_DWELL_TIME = "stage_dwell_time"
    TIME_TO_FIRST_TOUCH = "time_to_first_touch"
    SLA_BREACH_RATE = "sla_breach_rate"
    SLA_BREACH_COUNT = "sla_breach_count"
    ISSUE_RATE = "issue_rate"
    RE_REVIEW_COUNT = "re_review_count"
    HUMAN_OVERRIDE_RATE = "human_override_rate"
    TOKENS_PER_CLAIM = "tokens_per_claim"
    COST_PER_CLAIM = "cost_per_claim"
    MODEL_MIX = "model_mix"
    LLM_LATENCY = "llm_latency"
    SEVERITY_DISTRIBUTION = "severity_distribution"
    HIGH_SEVERITY_TREND = "high_severity_trend"
    RESERVE_AMOUNT = "reserve_amount"
    PAID_AMOUNT = "paid_amount"
    DEDUCTIBLE_ANALYSIS = "deductible_analysis"
    NET_CLAIM_AMOUNT_TREND = "net_claim_amount_trend"
    TOTAL_EXPENSES_PER_CLAIM = "total_expenses_per_claim"
    EXPENSE_TYPE_BREAKDOWN = "expense_type_breakdown"
    PHOTO_COUNT_PER_CLAIM = "photo_count_per_claim"
    AREAS_DOCUMENTED = "areas_documented"
    DAMAGE_TYPE_COVERAGE = "damage_type_coverage"
    COVERAGE_TYPE_DISTRIBUTION = "coverage_type_distribution"
    ENDORSEMENT_FREQUENCY = "endorsement_frequency"
    ROOF_COVERAGE_RATE = "roof_coverage_rate"
    ESTIMATE_ACCURACY = "estimate_accuracy"
    DEPRECIATION_RATIO = "depreciation_ratio"


def resolve_slug(slug: str) -> MetricSlug:
    try:
        return MetricSlug(slug)
    except ValueError:
        raise UnknownMetricError(slug) from None


# ── Metric templates ─────────────────────────────────────

_ALIAS_RE = re.compile(r"\bAS\s+(\w+)(?=\s+ON\b|\s*$)", re.IGNORECASE)
_COLUMN_ALIAS_RE = re.compile(r"\b([a-z_]+)\.[a-z_]+\b")


@dataclass(frozen=True)
class MetricQuery:
    """SQL template for one metric.

    ``leading`` is a fixed first grouping column ``(dimension name, expr)``;
    ``time_trend`` makes the first grouping column a DATE_TRUNC bucket
    (month unless the intent names a grain).
    """

    value: str
    source: tuple[str, ...]
    conditions: tuple[str, ...] = ()
    columns: Mapping[str, str] = field(default_factory=dict)
    leading: tuple[str, str] | None = None
    time_trend: bool = False
    leaderboard: bool = False
    time_scoped: bool = True
    time_column: str = "c.fnol_date"

    @property
    def aliases(self) -> frozenset[str]:
        found: set[str] = set()
        for line in self.source:
            found.update(_ALIAS_RE.findall(line))
        return frozenset(found)


_CLAIMS = (
    "claims AS c",
    "LEFT JOIN adjusters AS a ON a.id = c.assigned_adjuster_id",
    "LEFT JOIN clients AS cl ON cl.id = c.client_id",
)

_OPEN_STATUSES = ("open", "in_progress", "review")
_HIGH_SEVERITIES = ("high", "critical")


def _fraction(condition: str) -> str:
    return f"ROUND(AVG(CASE WHEN {condition} THEN 1.0 ELSE 0.0 END)::numeric, 4)"


def _money(expr: str) -> str:
    return f"ROUND({expr}::numeric, 2)"


def _per_claim_rollup(alias: str, select: str, table: str, where: str = "") -> str:
    inner = f"SELECT claim_id, {select} FROM {table}"
    if where:
        inner += f" WHERE {where}"
    return f"LEFT JOIN ({inner} GROUP BY claim_id) AS {alias} ON {alias}.claim_id = c.id"


_LLM_COLUMNS = {"stage": "lu.stage"}

METRIC_QUERIES: dict[MetricSlug, MetricQuery] = {
    # ── Throughput ───────────────────────────────────
    MetricSlug.CLAIMS_RECEIVED: MetricQuery(value="COUNT(*)", source=_CLAIMS),
    MetricSlug.CLAIMS_IN_PROGRESS: MetricQuery(
        value="COUNT(*)",
        source=_CLAIMS,
        conditions=(f"c.status IN ({_literal_list(_OPEN_STATUSES)})",),
    ),
    MetricSlug.QUEUE_DEPTH: MetricQuery(
        value="COUNT(*)",
        source=_CLAIMS,
        conditions=(f"c.status IN ({_literal_list(_OPEN_STATUSES)})",),
        leaderboard=True,
        time_scoped=False,
    ),
    # ── Speed & SLA ──────────────────────────────────
    MetricSlug.CYCLE_TIME_E2E: MetricQuery(
        value="ROUND(AVG(EXTRACT(EPOCH FROM (COALESCE(c.closed_at, NOW()) - c.fnol_date)) / 86400.0)::numeric, 2)",
        source=_CLAIMS,
    ),
    MetricSlug.STAGE_DWELL_TIME: MetricQuery(
        value="ROUND(AVG(sh.dwell_days)::numeric, 2)",
        source=(
            "claim_stage_history AS sh",
            "JOIN claims AS c ON c.id = sh.claim_id",
            "LEFT JOIN adjusters AS a ON a.id = sh.adjuster_id",
        ),
        conditions=("sh.dwell_days IS NOT NULL",),
        columns={"stage": "sh.stage"},
        leading=("stage", "sh.stage"),
        leaderboard=True,
    ),
    MetricSlug.TIME_TO_FIRST_TOUCH: MetricQuery(
        value="ROUND(AVG(EXTRACT(EPOCH FROM (c.first_touch_at - c.fnol_date)) / 3600.0)::numeric, 2)",
        source=_CLAIMS,
        conditions=("c.first_touch_at IS NOT NULL",),
    ),
    MetricSlug.SLA_BREACH_RATE: MetricQuery(value=_fraction("c.sla_breached"), source=_CLAIMS),
    MetricSlug.SLA_BREACH_COUNT: MetricQuery(
        value="COUNT(*)",
        source=_CLAIMS,
        conditions=("c.sla_breached = TRUE",),
    ),
    # ── Quality ──────────────────────────────────────
    MetricSlug.ISSUE_RATE: MetricQuery(value=_fraction("c.has_issues"), source=_CLAIMS),
    MetricSlug.RE_REVIEW_COUNT: MetricQuery(
        value="COUNT(*)",
        source=(
            "claim_reviews AS cr",
            "JOIN claims AS c ON c.id = cr.claim_id",
            "LEFT JOIN adjusters AS a ON a.id = cr.reviewer_id",
        ),
        conditions=(f"cr.review_type = {quote_literal('re_review')}",),
    ),
    MetricSlug.HUMAN_OVERRIDE_RATE: MetricQuery(
        value=_fraction("cr.human_override"),
        source=(
            "claim_reviews AS cr",
            "JOIN claims AS c ON c.id = cr.claim_id",
        ),
        columns={"stage": "cr.review_type", "decision_type": "cr.outcome"},
    ),
    # ── Cost & LLM ───────────────────────────────────
    MetricSlug.TOKENS_PER_CLAIM: MetricQuery(
        value="ROUND(AVG(lu.input_tokens + lu.output_tokens)::numeric, 2)",
        source=("claim_llm_usage AS lu", "JOIN claims AS c ON c.id = lu.claim_id"),
        columns=_LLM_COLUMNS,
    ),
    MetricSlug.COST_PER_CLAIM: MetricQuery(
        value="ROUND(AVG(lu.cost_usd)::numeric, 4)",
        source=("claim_llm_usage AS lu", "JOIN claims AS c ON c.id = lu.claim_id"),
        columns=_LLM_COLUMNS,
    ),
    MetricSlug.MODEL_MIX: MetricQuery(
        value="COUNT(*)",
        source=("claim_llm_usage AS lu", "JOIN claims AS c ON c.id = lu.claim_id"),
        columns=_LLM_COLUMNS,
        leading=("model", "lu.model"),
        leaderboard=True,
    ),
    MetricSlug.LLM_LATENCY: MetricQuery(
        value="ROUND(AVG(lu.latency_ms)::numeric, 2)",
        source=("claim_llm_usage AS lu", "JOIN claims AS c ON c.id = lu.claim_id"),
        columns=_LLM_COLUMNS,
    ),
    # ── Risk ─────────────────────────────────────────
    MetricSlug.SEVERITY_DISTRIBUTION: MetricQuery(
        value="COUNT(*)",
        source=_CLAIMS,
        leading=("severity", "c.severity"),
        leaderboard=True,
    ),
    MetricSlug.HIGH_SEVERITY_TREND: MetricQuery(
        value="COUNT(*)",
        source=_CLAIMS,
        conditions=(f"c.severity IN ({_literal_list(_HIGH_SEVERITIES)})",),
        time_trend=True,
    ),
    # ── Financial ────────────────────────────────────
    MetricSlug.RESERVE_AMOUNT: MetricQuery(value=_money("AVG(c.reserve_amount)"), source=_CLAIMS),
    MetricSlug.PAID_AMOUNT: MetricQuery(value=_money("AVG(c.paid_amount)"), source=_CLAIMS),
    MetricSlug.DEDUCTIBLE_ANALYSIS: MetricQuery(
        value=_money("AVG(cp.deductible)"),
        source=("claim_policies AS cp", "JOIN claims AS c ON c.id = cp.claim_id"),
        conditions=("cp.deductible IS NOT NULL",),
        leaderboard=True,
    ),
    MetricSlug.NET_CLAIM_AMOUNT_TREND: MetricQuery(
        value=_money("SUM(COALESCE(c.paid_amount, 0))"),
        source=_CLAIMS,
        time_trend=True,
    ),
    MetricSlug.TOTAL_EXPENSES_PER_CLAIM: MetricQuery(
        value=_money("AVG(bill.total_expenses)"),
        source=_CLAIMS + (_per_claim_rollup("bill", "SUM(amount) AS total_expenses", "claim_billing"),),
        conditions=("bill.total_expenses IS NOT NULL",),
    ),
    MetricSlug.EXPENSE_TYPE_BREAKDOWN: MetricQuery(
        value=_money("SUM(cb.amount)"),
        source=("claim_billing AS cb", "JOIN claims AS c ON c.id = cb.claim_id"),
        leading=("billing_type", f"COALESCE(cb.billing_type, {quote_literal('unclassified')})"),
        leaderboard=True,
    ),
    # ── Documentation ────────────────────────────────
    MetricSlug.PHOTO_COUNT_PER_CLAIM: MetricQuery(
        value="ROUND(AVG(COALESCE(photos.photo_count, 0))::numeric, 2)",
        source=_CLAIMS + (_per_claim_rollup("photos", "COUNT(*) AS photo_count", "claim_photos"),),
    ),
    MetricSlug.AREAS_DOCUMENTED: MetricQuery(
        value="ROUND(AVG(COALESCE(areas.area_count, 0))::numeric, 2)",
        source=_CLAIMS + (
            _per_claim_rollup(
                "areas",
                "COUNT(DISTINCT area_documented) AS area_count",
                "claim_photos",
                where="area_documented IS NOT NULL",
            ),
        ),
    ),
    MetricSlug.DAMAGE_TYPE_COVERAGE: MetricQuery(
        value="COUNT(*)",
        source=("claim_photos AS ph", "JOIN claims AS c ON c.id = ph.claim_id"),
        leading=("damage_type", f"COALESCE(ph.damage_type, {quote_literal('unknown')})"),
        leaderboard=True,
    ),
    # ── Policy ───────────────────────────────────────
    MetricSlug.COVERAGE_TYPE_DISTRIBUTION: MetricQuery(
        value="COUNT(*)",
        source=("claim_policies AS cp", "JOIN claims AS c ON c.id = cp.claim_id"),
        leading=("coverage_type", f"COALESCE(cp.coverage_type, {quote_literal('unknown')})"),
        leaderboard=True,
    ),
    MetricSlug.ENDORSEMENT_FREQUENCY: MetricQuery(
        value="ROUND(AVG(COALESCE(array_length(cp.endorsements, 1), 0))::numeric, 2)",
        source=("claim_policies AS cp", "JOIN claims AS c ON c.id = cp.claim_id"),
    ),
    MetricSlug.ROOF_COVERAGE_RATE: MetricQuery(
        value=_fraction("cp.roof_replacement_included"),
        source=("claim_policies AS cp", "JOIN claims AS c ON c.id = cp.claim_id"),
    ),
    # ── Estimates ────────────────────────────────────
    MetricSlug.ESTIMATE_ACCURACY: MetricQuery(
        value="ROUND(AVG(COALESCE(est.revision_count, 0))::numeric, 2)",
        source=_CLAIMS + (_per_claim_rollup("est", "COUNT(*) AS revision_count", "claim_estimates"),),
    ),
    MetricSlug.DEPRECIATION_RATIO: MetricQuery(
        value="ROUND(AVG(COALESCE(cp.actual_cash_value, 0) / cp.replacement_cost_value)::numeric, 4)",
        source=("claim_policies AS cp", "JOIN claims AS c ON c.id = cp.claim_id"),
        conditions=("cp.replacement_cost_value > 0",),
    ),
}

_missing = [s.value for s in MetricSlug if s not in METRIC_QUERIES]
if _missing:
    raise RuntimeError(f"Metric slugs without a query template: {', '.join(_missing)}")


# ── Dimension / filter column mapping ────────────────────

DIMENSION_COLUMNS: dict[str, str] = {
    "adjuster": f"COALESCE(a.full_name, {quote_literal('Unassigned')})",
    "team": "a.team",
    "peril": "c.peril",
    "region": "c.region",
    "severity": "c.severity",
    "priority": "c.severity",
    "status": "c.status",
    "stage": "c.current_stage",
    "current_stage": "c.current_stage",
    "state_code": "c.state_code",
    "cat_code": "c.cat_code",
    "sla_breached": "c.sla_breached",
    "carrier": "cl.name",
    "issue_type": "it.issue_type",
    "model": "lu.model",
    "decision_type": "cr.review_type",
    "coverage_type": "cp.coverage_type",
    "policy_type": "cp.policy_type",
    "expense_category": "cb.expense_category",
    "billing_type": "cb.billing_type",
    "vendor_name": "cb.vendor_name",
    "damage_type": "ph.damage_type",
}

# Grouping by these needs an extra FROM item.
_DIMENSION_JOINS: dict[str, tuple[str, str]] = {
    "issue_type": ("it", "CROSS JOIN UNNEST(c.issue_types) AS it(issue_type)"),
}

_SAFE_IDENTIFIER = re.compile(r"^[a-z_]+$")

_COMPARATORS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


def _date_trunc(grain: str, column: str) -> str:
    return f"DATE_TRUNC({quote_literal(grain)}, {column})"


def _required_alias(expr: str) -> str | None:
    m = _COLUMN_ALIAS_RE.search(expr)
    return m.group(1) if m else None


def dimension_column(slug: MetricSlug, dim: str) -> str:
    """Physical column (or expression) for logical dimension *dim*."""
    template = METRIC_QUERIES[slug]
    if dim in TIME_DIMENSIONS:
        return _date_trunc(dim, template.time_column)
    if dim in template.columns:
        return template.columns[dim]
    if dim in DIMENSION_COLUMNS:
        return DIMENSION_COLUMNS[dim]
    if not _SAFE_IDENTIFIER.match(dim):
        raise CompileError(f"Invalid dimension name: {dim!r}")
    return f"c.{dim}"


def result_dimensions(slug: str, dimensions: list[str]) -> list[str]:
    """Logical dimension name of each ``dim_<i>`` column a query returns."""
    try:
        template = METRIC_QUERIES[resolve_slug(slug)]
    except UnknownMetricError:
        return list(dimensions)
    if template.time_trend:
        grain = next((d for d in dimensions if d in TIME_DIMENSIONS), "month")
        return [grain] + [d for d in dimensions if d != grain]
    if template.leading:
        name = template.leading[0]
        return [name] + [d for d in dimensions if d != name]
    return list(dimensions)


def _plan_dimensions(slug: MetricSlug, dimensions: list[str]) -> list[str]:
    """Grouping expressions, in ``dim_<i>`` order."""
    template = METRIC_QUERIES[slug]
    exprs: list[str] = []
    for i, name in enumerate(result_dimensions(slug.value, dimensions)):
        if i == 0 and template.leading and name == template.leading[0]:
            exprs.append(template.leading[1])
        else:
            exprs.append(dimension_column(slug, name))
    return exprs


# ── WHERE assembly ───────────────────────────────────────

def _filter_values(f: IntentFilter) -> list[Any]:
    values = f.value if isinstance(f.value, list) else [f.value]
    if not values:
        raise CompileError(f"Filter '{f.field}' needs at least one value")
    return list(values)


def _bind_list(name: str, values: list[Any], params: dict[str, Any], wrap: str = "{}") -> str:
    placeholders = []
    for j, v in enumerate(values):
        key = f"{name}_{j}"
        params[key] = v
        placeholders.append(wrap.format(f":{key}"))
    return ", ".join(placeholders)


def _adjuster_clause(f: IntentFilter, name: str, params: dict[str, Any]) -> str:
    values = _filter_values(f)
    if f.operator in ("eq", "neq"):
        params[name] = values[0]
        match = f"LOWER(adj.full_name) = LOWER(:{name})"
    elif f.operator in ("in", "not_in"):
        match = f"LOWER(adj.full_name) IN ({_bind_list(name, values, params, 'LOWER({})')})"
    else:
        raise CompileError(f"Operator '{f.operator}' is not supported for filter 'adjuster'")
    negate = "NOT " if f.operator in ("neq", "not_in") else ""
    return (
        f"c.assigned_adjuster_id {negate}IN ("
        f"SELECT adj.id FROM adjusters AS adj "
        f"WHERE adj.client_id = :client_id AND {match})"
    )


def _issue_type_clause(f: IntentFilter, name: str, params: dict[str, Any]) -> str:
    values = _filter_values(f)
    if f.operator in ("eq", "neq"):
        params[name] = values[0]
        clause = f":{name} = ANY(c.issue_types)"
    elif f.operator in ("in", "not_in"):
        clause = f"c.issue_types && CAST(ARRAY[{_bind_list(name, values, params)}] AS TEXT[])"
    else:
        raise CompileError(f"Operator '{f.operator}' is not supported for filter 'issue_type'")
    return f"NOT ({clause})" if f.operator in ("neq", "not_in") else clause


def _filter_clause(
    slug: MetricSlug,
    f: IntentFilter,
    index: int,
    params: dict[str, Any],
    aliases: frozenset[str],
) -> str:
    name = f"f{index}"
    if f.field == "adjuster":
        return _adjuster_clause(f, name, params)
    if f.field == "issue_type":
        return _issue_type_clause(f, name, params)

    column = dimension_column(slug, f.field)
    alias = _required_alias(column)
    if alias is not None and alias not in aliases:
        raise CompileError(f"Filter '{f.field}' is not available for metric '{slug.value}'")

    if f.operator in _COMPARATORS:
        if isinstance(f.value, list):
            raise CompileError(f"Filter '{f.field}' with '{f.operator}' takes a single value")
        params[name] = f.value
        return f"{column} {_COMPARATORS[f.operator]} :{name}"
    if f.operator in ("in", "not_in"):
        keyword = "NOT IN" if f.operator == "not_in" else "IN"
        return f"{column} {keyword} ({_bind_list(name, _filter_values(f), params)})"
    if f.operator == "between":
        values = _filter_values(f)
        if len(values) != 2:
            raise CompileError(f"Filter '{f.field}' with 'between' needs exactly two values")
        params[f"{name}_0"], params[f"{name}_1"] = values
        return f"{column} BETWEEN :{name}_0 AND :{name}_1"
    raise CompileError(f"Unknown filter operator: {f.operator!r}")


def build_where_clause(
    slug: MetricSlug,
    intent: QueryIntent,
    params: dict[str, Any],
    aliases: frozenset[str] | None = None,
) -> list[str]:
    """Ordered WHERE conditions; binds their values into *params*.

    ``params`` must already hold ``client_id``.
    """
    template = METRIC_QUERIES[slug]
    if aliases is None:
        aliases = template.aliases

    clauses = ["c.client_id = :client_id"]

    tr = intent.time_range
    if template.time_scoped and tr is not None and tr.start and tr.end:
        params["start_date"] = tr.start
        params["end_date"] = tr.end + timedelta(days=1)
        clauses.append(f"{template.time_column} >= :start_date")
        clauses.append(f"{template.time_column} < :end_date")

    for i, f in enumerate(intent.filters):
        clauses.append(_filter_clause(slug, f, i, params, aliases))

    clauses.extend(template.conditions)
    return clauses


# ── Compilation ──────────────────────────────────────────

@dataclass(frozen=True)
class CompiledQuery:
    sql: str
    parameters: Mapping[str, Any]
    metric_slug: str = ""


def _order_by(template: MetricQuery, intent: QueryIntent, grouped: bool) -> str | None:
    if not grouped:
        return None
    if intent.sort is not None:
        direction = "DESC" if intent.sort.direction.lower() == "desc" else "ASC"
        target = "value" if intent.sort.field == "value" else "dim_0"
        return f"{target} {direction}"
    return "value DESC" if template.leaderboard else "dim_0 ASC"


def compile_query(
    metric: MetricDefinition,
    intent: QueryIntent,
    client_id: str,
    row_limit: int | None = None,
) -> CompiledQuery:
    """Build the parameterised SQL for *metric* under *intent* for one tenant."""
    slug = resolve_slug(metric.slug)
    template = METRIC_QUERIES[slug]
    max_rows = get_settings().sql_row_limit
    cap = min(row_limit or max_rows, max_rows)

    params: dict[str, Any] = {"client_id": client_id}
    source = list(template.source)
    aliases = set(template.aliases)

    dim_names = result_dimensions(slug.value, intent.dimensions)
    for name in dim_names:
        if name in _DIMENSION_JOINS and name not in template.columns:
            alias, join = _DIMENSION_JOINS[name]
            if join not in source:
                source.append(join)
                aliases.add(alias)

    dim_exprs = _plan_dimensions(slug, intent.dimensions)
    for name, expr in zip(dim_names, dim_exprs):
        alias = _required_alias(expr)
        if alias is not None and alias not in aliases:
            raise CompileError(f"Dimension '{name}' is not available for metric '{slug.value}'")

    where = build_where_clause(slug, intent, params, frozenset(aliases))

    select = [f"{expr} AS dim_{i}" for i, expr in enumerate(dim_exprs)]
    select.append(f"{template.value} AS value")

    lines = ["SELECT", "  " + ",\n  ".join(select), f"FROM {source[0]}"]
    lines.extend(source[1:])
    lines.append("WHERE " + "\n  AND ".join(where))
    if dim_exprs:
        lines.append("GROUP BY " + ", ".join(str(i + 1) for i in range(len(dim_exprs))))
    order = _order_by(template, intent, grouped=bool(dim_exprs))
    if order:
        lines.append(f"ORDER BY {order}")
    limit = min(intent.limit or cap, cap)
    lines.append(f"LIMIT {int(limit)}")

    sql = "\n".join(lines)
    logger.debug("Compiled %s:\n%s", slug.value, sql)
    return CompiledQuery(sql=sql, parameters=params, metric_slug=slug.value)


# ── Execution ────────────────────────────────────────────

@dataclass(frozen=True)
class QueryResult:
    rows: list[dict[str, Any]]
    query_ms: float
    record_count: int


def _default_executor() -> Executor:
    from src.db.executor import execute_readonly
    return execute_readonly


def execute_query(
    compiled: CompiledQuery,
    executor: Executor | None = None,
    timeout_ms: int | None = None,
) -> QueryResult:
    """Run *compiled* once.  Any failure becomes ``QueryExecutionError``; no retries."""
    violations = check_sql_safety(compiled.sql)
    if violations:
        raise CompileError(
            f"Compiled query for '{compiled.metric_slug}' failed safety checks: {'; '.join(violations)}"
        )

    run = executor or _default_executor()
    if timeout_ms is None:
        timeout_ms = get_settings().query_timeout_ms

    t0 = time.perf_counter()
    try:
        rows = run(compiled.sql, dict(compiled.parameters), timeout_ms=timeout_ms)
    except Exception as exc:
        raw = (str(exc).strip().splitlines() or [type(exc).__name__])[0]
        logger.error("Query failed  metric=%s  error=%s", compiled.metric_slug, raw)
        logger.debug("Failed SQL for %s:\n%s", compiled.metric_slug, compiled.sql)
        raise QueryExecutionError(compiled.metric_slug, raw) from exc
    query_ms = round((time.perf_counter() - t0) * 1000, 2)

    logger.info("Query ok  metric=%s  rows=%d  %.1f ms", compiled.metric_slug, len(rows), query_ms)
    return QueryResult(rows=rows, query_ms=query_ms, record_count=len(rows))


def run_metric_query(
    metric: MetricDefinition,
    intent: QueryIntent,
    client_id: str,
    executor: Executor | None = None,
) -> QueryResult:
    """Compile and execute in one step."""
    return execute_query(compile_query(metric, intent, client_id), executor=executor)
