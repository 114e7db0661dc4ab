"""
FastAPI application entry-point.
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import anomalies, ask, catalog

app = FastAPI(
    title="Claims Analytics Query Engine",
    version="0.1.0",
    description="Governed metric queries, comparisons and anomaly detection over claims data",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ask.router, prefix="/ask", tags=["Query engine"])
app.include_router(catalog.router, tags=["Catalog"])
app.include_router(anomalies.router, prefix="/anomalies", tags=["Anomalies"])


@app.get("/health")
def health():
    return {"status": "ok"}
