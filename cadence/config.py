"""Cadence: Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── HubSpot ──
    hubspot_access_token: str = ""
    hubspot_base_url: str = "https://api.hubapi.com"
    hubspot_max_records: int = 1000

    # ── BigQuery ──
    bigquery_project_id: str = ""
    bigquery_credentials: str = ""  # service account JSON

    # ── Adapter boundary ──
    adapter_timeout_seconds: float = 30.0
    adapter_max_retries: int = 3
    adapter_retry_base_delay: float = 2.0  # seconds, doubled per attempt

    # ── Sync ──
    sync_delay_seconds: float = 0.1  # throttle between metrics in a batch
    sync_interval_minutes: int = 15
    scheduler_enabled: bool = True

    # ── Anomaly detection ──
    missing_data_hours: int = 24
    anomaly_history_limit: int = 30

    # ── App ──
    log_level: str = "INFO"

    @property
    def effective_database_url(self) -> str:
        """Return the configured database URL, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/cadence.db"
        return "sqlite:///./cadence.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
