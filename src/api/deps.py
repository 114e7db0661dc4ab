"""Request dependencies; tests swap these via ``app.dependency_overrides``."""
from __future__ import annotations

from typing import Callable

from fastapi import HTTPException

from src.db.tenants import get_default_client_id
from src.engine.cache import QueryCache, get_cache
from src.engine.service import QueryEngine, get_query_engine
from src.governance.metric_catalog import MetricCatalog, load_metric_catalog


def engine_dep() -> QueryEngine:
    return get_query_engine()


def cache_dep() -> QueryCache:
    return get_cache()


def catalog_dep() -> MetricCatalog:
    return load_metric_catalog()


def tenant_resolver_dep() -> Callable[[str | None], str]:
    return get_default_client_id


def anomaly_detector_dep():
    from src.db.anomaly_store import AnomalyStore
    from src.engine.anomaly_detector import AnomalyDetector
    return AnomalyDetector(store=AnomalyStore())


def anomaly_store_dep():
    from src.db.anomaly_store import AnomalyStore
    return AnomalyStore()


def resolve_tenant(resolver: Callable[[str | None], str], requested: str | None) -> str:
    """Tenant for the request, or 400 when none can be determined."""
    try:
        return resolver(requested)
    except LookupError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
