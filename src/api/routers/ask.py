"""POST /ask -- answer one conversational turn from a structured intent."""
from __future__ import annotations

from typing import Any, Callable

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from src.api.deps import cache_dep, catalog_dep, engine_dep, resolve_tenant, tenant_resolver_dep
from src.core.logging import get_logger
from src.engine.cache import QueryCache
from src.engine.context_manager import ConversationContext
from src.engine.intent import QueryIntent
from src.engine.service import QueryEngine
from src.engine.suggestions import suggest_metrics
from src.governance.metric_catalog import MetricCatalog

logger = get_logger(__name__)
router = APIRouter()


class AskRequest(BaseModel):
    intent: QueryIntent
    context: ConversationContext | None = Field(None, description="Thread context from the previous turn")
    client_id: str | None = Field(None, description="Tenant; defaults to the configured / oldest client")
    turn_index: int | None = Field(None, ge=0)
    message: str = Field("", max_length=2000, description="The user's original wording, kept in history")


class ErrorResponse(BaseModel):
    type: str
    message: str
    suggestions: list[str]
    details: list[str] = []


class AskResponse(BaseModel):
    success: bool
    chart: dict[str, Any] | None
    error: ErrorResponse | None
    suggestions: list[str]
    metadata: dict[str, Any]
    intent: dict[str, Any] | None
    context: ConversationContext


class ValidateResponse(BaseModel):
    is_valid: bool
    errors: list[str]
    metric_slug: str | None


class SuggestionItem(BaseModel):
    slug: str
    display_name: str
    description: str
    score: float


class SuggestResponse(BaseModel):
    query: str
    suggestions: list[SuggestionItem]


class CacheStatsResponse(BaseModel):
    backend: str
    hits: int
    misses: int
    errors: int
    hit_rate: float


@router.post("", response_model=AskResponse)
def ask_endpoint(
    req: AskRequest,
    engine: QueryEngine = Depends(engine_dep),
    tenant_resolver: Callable[[str | None], str] = Depends(tenant_resolver_dep),
):
    """Merge context -> validate -> (cache | compile + execute) -> format."""
    client_id = resolve_tenant(tenant_resolver, req.client_id)
    try:
        result = engine.ask(
            req.intent,
            client_id,
            context=req.context,
            turn_index=req.turn_index,
            user_message=req.message,
        )
    except Exception as exc:
        logger.exception("QueryEngine.ask failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return AskResponse(**result.to_dict())


@router.post("/validate", response_model=ValidateResponse)
def validate_endpoint(req: AskRequest, engine: QueryEngine = Depends(engine_dep)):
    """Dry run: validate the effective intent without touching the database."""
    result = engine.validate(req.intent, req.context)
    return ValidateResponse(
        is_valid=result.valid,
        errors=result.errors,
        metric_slug=result.metric.slug if result.metric else None,
    )


@router.get("/suggest", response_model=SuggestResponse)
def suggest_endpoint(q: str = "", catalog: MetricCatalog = Depends(catalog_dep)):
    """Metric suggestions for a partial or misspelled name."""
    results = suggest_metrics(q, catalog=catalog) if q.strip() else []
    return SuggestResponse(
        query=q,
        suggestions=[SuggestionItem(**s.to_dict()) for s in results],
    )


@router.get("/cache/stats", response_model=CacheStatsResponse)
def cache_stats_endpoint(cache: QueryCache = Depends(cache_dep)):
    """Process-local query cache counters."""
    return CacheStatsResponse(**cache.stats())


@router.post("/cache/cleanup")
def cache_cleanup_endpoint(cache: QueryCache = Depends(cache_dep)):
    """Sweep expired cache entries."""
    return {"removed": cache.cleanup_expired()}
