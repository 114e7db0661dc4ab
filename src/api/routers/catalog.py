"""
GET /metrics, GET /metrics/detail, GET /catalog -- metadata endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from src.api.deps import catalog_dep
from src.engine.intent import CHART_TYPES, FILTER_FIELDS, FILTER_OPERATORS, TIME_DIMENSIONS
from src.governance.metric_catalog import MetricCatalog

router = APIRouter()


class MetricItem(BaseModel):
    slug: str
    display_name: str
    category: str
    unit: str
    default_chart_type: str
    allowed_dimensions: list[str]
    description: str


class CatalogResponse(BaseModel):
    version: int
    metrics: list[MetricItem]
    categories: dict[str, list[str]]
    time_grains: list[str]
    chart_types: list[str]
    filter_fields: list[str]
    filter_operators: list[str]


@router.get("/metrics")
def list_metrics(catalog: MetricCatalog = Depends(catalog_dep)) -> dict:
    """Active metric slugs (lightweight)."""
    return {"metrics": catalog.get_metric_slugs()}


@router.get("/metrics/detail", response_model=list[MetricItem])
def list_metrics_detail(catalog: MetricCatalog = Depends(catalog_dep)) -> list[MetricItem]:
    return [MetricItem(**m) for m in catalog.get_metrics_list()]


@router.get("/catalog", response_model=CatalogResponse)
def full_catalog(catalog: MetricCatalog = Depends(catalog_dep)) -> CatalogResponse:
    """Everything a client needs to build a valid intent."""
    return CatalogResponse(
        version=catalog.version,
        metrics=[MetricItem(**m) for m in catalog.get_metrics_list()],
        categories=catalog.get_categories(),
        time_grains=list(TIME_DIMENSIONS),
        chart_types=list(CHART_TYPES),
        filter_fields=list(FILTER_FIELDS),
        filter_operators=list(FILTER_OPERATORS),
    )
