"""GET /anomalies, GET /anomalies/detect -- stored events and on-demand runs."""
from __future__ import annotations

from typing import Any, Callable, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from src.api.deps import anomaly_detector_dep, anomaly_store_dep, resolve_tenant, tenant_resolver_dep
from src.core.logging import get_logger
from src.engine.anomaly_detector import severity_breakdown

logger = get_logger(__name__)
router = APIRouter()


class AnomalyListResponse(BaseModel):
    anomalies: list[dict[str, Any]]
    total: int
    limit: int
    offset: int


class DetectResponse(BaseModel):
    client_id: str
    anomalies: list[dict[str, Any]]
    count: int
    severity_breakdown: dict[str, int]


@router.get("", response_model=AnomalyListResponse)
def list_anomalies(
    client_id: str | None = None,
    metric: str | None = None,
    severity: Literal["info", "warning", "critical"] | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store=Depends(anomaly_store_dep),
    tenant_resolver: Callable[[str | None], str] = Depends(tenant_resolver_dep),
):
    """Stored anomaly events, newest first."""
    tenant = resolve_tenant(tenant_resolver, client_id)
    try:
        rows, total = store.list_events(
            tenant, metric_slug=metric, severity=severity, limit=limit, offset=offset,
        )
    except Exception as exc:
        logger.exception("Listing anomalies failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return AnomalyListResponse(anomalies=rows, total=total, limit=limit, offset=offset)


@router.get("/detect", response_model=DetectResponse)
def detect_anomalies(
    client_id: str | None = None,
    metrics: str | None = Query(None, description="Comma-separated metric slugs"),
    lookback_days: int | None = Query(None, ge=7, le=365),
    threshold: float | None = Query(None, gt=0, le=10),
    detector=Depends(anomaly_detector_dep),
    tenant_resolver: Callable[[str | None], str] = Depends(tenant_resolver_dep),
):
    """Run anomaly detection now and return the events it raised."""
    tenant = resolve_tenant(tenant_resolver, client_id)
    slugs = [s.strip() for s in metrics.split(",") if s.strip()] if metrics else None
    try:
        events = detector.detect_anomalies(
            tenant, metric_slugs=slugs, lookback_days=lookback_days, threshold=threshold,
        )
    except Exception as exc:
        logger.exception("Anomaly detection failed")
        raise HTTPException(status_code=500, detail=str(exc))
    return DetectResponse(
        client_id=tenant,
        anomalies=[e.to_dict() for e in events],
        count=len(events),
        severity_breakdown=severity_breakdown(events),
    )
