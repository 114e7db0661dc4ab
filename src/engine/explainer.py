"""
Caller-facing error payloads.

Two kinds of failure reach the user:
  - ``unsupported``: the question can't be answered as asked (validation
    errors); the message lists what was wrong, suggestions name metrics
    that can be asked about
  - ``query_error``: the database rejected or timed out on the query; the
    message is generic and never carries SQL or driver text
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from src.engine.suggestions import alternative_metric_names
from src.governance.metric_catalog import MetricCatalog

ERROR_UNSUPPORTED = "unsupported"
ERROR_QUERY = "query_error"

QUERY_ERROR_MESSAGE = (
    "Unable to run this analysis. Try rephrasing your question or using different filters."
)
QUERY_ERROR_SUGGESTIONS = [
    "Try a different time range",
    "Remove specific filters",
    "Ask about a different metric",
]


@dataclass
class EngineError:
    type: str
    message: str
    suggestions: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "suggestions": self.suggestions,
            "details": self.details,
        }


def unsupported_error(
    errors: list[str],
    catalog: MetricCatalog,
    requested_slug: str | None = None,
) -> EngineError:
    """Validation failure: every error in the message, metric alternatives as suggestions."""
    return EngineError(
        type=ERROR_UNSUPPORTED,
        message="; ".join(errors),
        suggestions=alternative_metric_names(requested_slug, catalog),
        details=list(errors),
    )


def query_error() -> EngineError:
    """Execution failure; the driver error stays in the logs."""
    return EngineError(
        type=ERROR_QUERY,
        message=QUERY_ERROR_MESSAGE,
        suggestions=list(QUERY_ERROR_SUGGESTIONS),
    )
