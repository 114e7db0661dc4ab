"""
Metric suggestions and follow-up questions.

``suggest_metrics`` ranks catalog metrics against a partial or misspelled
slug / name using:
  - Exact/prefix matching
  - Token overlap (Jaccard-like)
  - Levenshtein edit-distance similarity

``follow_up_suggestions`` proposes next questions after a successful
answer, derived from what the metric allows and the current intent.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.core.logging import get_logger
from src.engine.intent import TIME_DIMENSIONS, QueryIntent
from src.governance.metric_catalog import MetricCatalog, MetricDefinition, load_metric_catalog

logger = get_logger(__name__)


@dataclass
class Suggestion:
    """A single metric suggestion."""
    slug: str
    display_name: str
    description: str
    score: float  # 0.0 – 1.0, higher is better match

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "display_name": self.display_name,
            "description": self.description,
            "score": round(self.score, 3),
        }


# ── Similarity helpers ──────────────────────────────────


def _levenshtein(a: str, b: str) -> int:
    """Compute Levenshtein edit distance between two strings."""
    if len(a) < len(b):
        return _levenshtein(b, a)
    if not b:
        return len(a)

    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a):
        curr = [i + 1]
        for j, cb in enumerate(b):
            cost = 0 if ca == cb else 1
            curr.append(min(curr[j] + 1, prev[j + 1] + 1, prev[j] + cost))
        prev = curr
    return prev[-1]


def _edit_similarity(a: str, b: str) -> float:
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - _levenshtein(a, b) / max_len


def _tokenize(text: str) -> set[str]:
    return {t for t in text.lower().replace("_", " ").replace("-", " ").split() if t}


def _jaccard(a: set[str], b: set[str]) -> float:
    union = a | b
    return len(a & b) / len(union) if union else 0.0


def _score(query: str, metric: MetricDefinition) -> float:
    """Composite similarity (0–1).

    0.50 edit similarity against the slug or display name (best of the two),
    0.25 token overlap with slug + display name, 0.15 token overlap with the
    description, 0.10 prefix bonus.
    """
    q = query.lower().strip()
    slug = metric.slug.lower()
    name = metric.display_name.lower()

    edit_sim = max(_edit_similarity(q, slug), _edit_similarity(q.replace("_", " "), name))
    q_tokens = _tokenize(q)
    name_overlap = _jaccard(q_tokens, _tokenize(slug) | _tokenize(name))
    desc_overlap = _jaccard(q_tokens, _tokenize(metric.description))
    prefix = 1.0 if q and (slug.startswith(q) or q.startswith(slug) or name.startswith(q)) else 0.0

    return 0.50 * edit_sim + 0.25 * name_overlap + 0.15 * desc_overlap + 0.10 * prefix


# ── Public API ──────────────────────────────────────────


def suggest_metrics(
    query: str,
    catalog: MetricCatalog | None = None,
    top_k: int = 5,
    min_score: float = 0.30,
) -> list[Suggestion]:
    """Active metrics ranked by similarity to *query*, best first."""
    if catalog is None:
        catalog = load_metric_catalog()

    ranked: list[Suggestion] = []
    for m in catalog.list_active_metrics():
        s = _score(query, m)
        if s >= min_score:
            ranked.append(Suggestion(
                slug=m.slug,
                display_name=m.display_name,
                description=m.description,
                score=s,
            ))

    ranked.sort(key=lambda x: x.score, reverse=True)
    return ranked[:top_k]


def alternative_metric_names(
    query: str | None,
    catalog: MetricCatalog,
    top_k: int = 5,
) -> list[str]:
    """Display names to offer when a question can't be answered.

    Close matches for *query* when there are any, else the first active
    metrics in catalog order.
    """
    if query:
        close = suggest_metrics(query, catalog=catalog, top_k=top_k)
        if close:
            return [s.display_name for s in close]
    return [m.display_name for m in catalog.list_active_metrics()[:top_k]]


def _dimension_phrase(dim: str) -> str:
    return dim.replace("_", " ")


def follow_up_suggestions(
    intent: QueryIntent,
    metric: MetricDefinition,
    max_items: int = 3,
) -> list[str]:
    """Deterministic next questions for an answered *intent*."""
    name = metric.display_name
    out: list[str] = []

    if intent.comparison is None:
        out.append(f"Compare {name} with the previous period")

    used = set(intent.dimensions)
    has_time = any(d in TIME_DIMENSIONS for d in intent.dimensions)
    for dim in sorted(metric.allowed_dimensions - used):
        if dim in TIME_DIMENSIONS:
            if has_time:
                continue
            out.append(f"Show {name} trend by {dim}")
            has_time = True
        else:
            out.append(f"Break down {name} by {_dimension_phrase(dim)}")
        if len(out) >= max_items:
            break

    if len(out) < max_items:
        current = intent.time_range.value if intent.time_range is not None else ""
        alternate = "last_90_days" if current != "last_90_days" else "last_30_days"
        out.append(f"Show {name} for the {alternate.replace('_', ' ')}")

    return out[:max_items]
