"""
Deterministic SQL safety checks.

The last gate before a compiled metric query reaches Postgres.  The
compiler only emits SQL from its own templates, so any violation here is
a compiler bug, never user input; the query is refused rather than run.

Checks performed:
  1. A single SELECT (or WITH ... SELECT) statement
  2. No SELECT *
  3. No dangerous keywords (DROP, ALTER, INSERT, UPDATE, DELETE, GRANT ...)
  4. No comments (--, /*)
  5. No system schemas (pg_catalog, information_schema)
  6. No PII columns in the SELECT projection
  7. Only claims-domain tables appear after FROM / JOIN
  8. LIMIT present and within the row cap
  9. Tenant scoping bind parameter present
"""
from __future__ import annotations

import re

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

ALLOWED_TABLES: frozenset[str] = frozenset({
    "claims",
    "adjusters",
    "clients",
    "claim_stage_history",
    "claim_reviews",
    "claim_llm_usage",
    "claim_photos",
    "claim_policies",
    "claim_estimates",
    "claim_billing",
})

BLOCKED_SCHEMAS: tuple[str, ...] = ("pg_catalog", "information_schema")

BLOCKED_COLUMNS: tuple[str, ...] = ("claimant_name", "email")

# ── Compiled patterns ────────────────────────────────────

_DANGEROUS_KW = re.compile(
    r"\b(DROP|ALTER|TRUNCATE|INSERT|UPDATE|DELETE|MERGE|GRANT|REVOKE|"
    r"CREATE|REPLACE|EXECUTE|EXEC|CALL|COPY|SET\s+ROLE|RESET\s+ROLE)\b",
    re.IGNORECASE,
)

_MULTI_STMT = re.compile(r";\s*\S")

_COMMENT_INLINE = re.compile(r"--")
_COMMENT_BLOCK = re.compile(r"/\*")

_SELECT_STAR = re.compile(r"\bSELECT\s+\*", re.IGNORECASE)

_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+)\s*$", re.IGNORECASE)

# Table references; set-returning function calls (JOIN UNNEST(...)) are skipped.
_FROM_JOIN_RE = re.compile(r"\b(?:FROM|JOIN)\s+([\w.]+)\b(?!\s*\()", re.IGNORECASE)

_TENANT_PARAM = re.compile(r"client_id\s*=\s*:client_id\b")

_FROM_SPLIT = re.compile(r"^FROM\b", re.IGNORECASE | re.MULTILINE)


def check_sql_safety(sql: str, max_rows: int | None = None) -> list[str]:
    """Return a list of safety violations (empty list = safe)."""
    if max_rows is None:
        max_rows = get_settings().sql_row_limit

    errors: list[str] = []
    sql_stripped = sql.strip()

    # ── 1. SELECT / WITH only ────────────────────────
    upper = sql_stripped.upper()
    if not (upper.startswith("SELECT") or upper.startswith("WITH")):
        errors.append("SQL must be a SELECT statement.")
    if _MULTI_STMT.search(sql_stripped):
        errors.append("Multi-statement SQL is not allowed (found ';' followed by another statement).")

    # ── 2. No SELECT * ───────────────────────────────
    if _SELECT_STAR.search(sql_stripped):
        errors.append("SELECT * is not allowed. Specify explicit columns.")

    # ── 3. No dangerous keywords ─────────────────────
    m = _DANGEROUS_KW.search(sql_stripped)
    if m:
        errors.append(f"Dangerous keyword detected: '{m.group(1).upper()}'.")

    # ── 4. No comments ───────────────────────────────
    if _COMMENT_INLINE.search(sql_stripped):
        errors.append("Inline comments (--) are not allowed.")
    if _COMMENT_BLOCK.search(sql_stripped):
        errors.append("Block comments (/* */) are not allowed.")

    # ── 5. Blocked schemas ───────────────────────────
    sql_lower = sql_stripped.lower()
    for schema in BLOCKED_SCHEMAS:
        if f"{schema}." in sql_lower:
            errors.append(f"Blocked schema referenced: '{schema}'.")

    # ── 6. Blocked columns in the projection ─────────
    projection = _FROM_SPLIT.split(sql_stripped, maxsplit=1)[0]
    for col in BLOCKED_COLUMNS:
        if re.search(rf"\b\w+\.{re.escape(col)}\b", projection, re.IGNORECASE):
            errors.append(f"Blocked column '{col}' appears in the SELECT projection.")

    # ── 7. Allowed tables only ───────────────────────
    for ref in _FROM_JOIN_RE.findall(sql_stripped):
        if "." in ref:
            # alias.column inside an expression, e.g. EXTRACT(EPOCH FROM c.x)
            continue
        if ref.lower() not in ALLOWED_TABLES:
            errors.append(f"Table '{ref}' is not in the allowed tables list.")

    # ── 8. LIMIT ─────────────────────────────────────
    limit_match = _LIMIT_RE.search(sql_stripped)
    if not limit_match:
        errors.append(f"SQL must end with a LIMIT clause (max {max_rows}).")
    elif int(limit_match.group(1)) > max_rows:
        errors.append(f"LIMIT {limit_match.group(1)} exceeds maximum allowed ({max_rows}).")

    # ── 9. Tenant scoping ────────────────────────────
    if not _TENANT_PARAM.search(sql_stripped):
        errors.append("SQL is not scoped to a tenant (missing client_id = :client_id).")

    if errors:
        logger.warning("SQL safety violations: %s", errors)
    return errors
