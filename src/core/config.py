"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Postgres ─────────────────────────────────────────
    postgres_user: str = "claims"
    postgres_password: str = "claims_pw"
    postgres_db: str = "claims_analytics"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # ── Query engine ─────────────────────────────────────
    query_timeout_ms: int = 5000
    cache_timeout_ms: int = 2000
    sql_row_limit: int = 1000
    cache_backend: str = "postgres"  # postgres | memory
    cache_ttl_minutes: int = 15
    catalog_ttl_seconds: int = 300
    default_tenant_ttl_seconds: int = 300
    default_client_id: str = ""

    # ── Anomaly detection ────────────────────────────────
    anomaly_lookback_days: int = 30
    anomaly_threshold: float = 2.0
    anomaly_max_workers: int = 4
    anomaly_default_metrics: list[str] = [
        "claims_received",
        "cycle_time_e2e",
        "sla_breach_rate",
        "time_to_first_touch",
        "issue_rate",
    ]

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
