"""Shared fixtures for tests that need a live Postgres."""
from __future__ import annotations

import uuid

import pytest
from sqlalchemy import text


@pytest.fixture(scope="session")
def client_id():
    """A throw-away tenant with the schema applied; removed afterwards."""
    from pipelines.seed.seed_data import apply_schema
    from src.db.connection import dispose_engine, get_engine

    engine = get_engine()
    apply_schema(engine)
    slug = f"test-{uuid.uuid4().hex[:8]}"
    with engine.begin() as conn:
        cid = conn.execute(
            text("INSERT INTO clients (name, slug) VALUES (:name, :slug) RETURNING id"),
            {"name": "Integration Test", "slug": slug},
        ).scalar()
    yield str(cid)
    with engine.begin() as conn:
        conn.execute(text("DELETE FROM query_cache WHERE client_id = :cid"), {"cid": cid})
        conn.execute(text("DELETE FROM clients WHERE id = :cid"), {"cid": cid})
    dispose_engine()
