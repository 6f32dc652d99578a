from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="EL_", extra="ignore")

    app_name: str = "Edition Ledger"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./edition_ledger.db"
    test_database_url: str = "sqlite+pysqlite:///:memory:"

    merge_contact_window_hours: int = Field(
        default=72,
        ge=0,
        description="Tolerance for the email + purchase date fallback match",
    )
    sequencing_max_workers: int = Field(default=4, ge=1, le=32)
    lock_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long the in-process lock fallback waits before reporting a transient error",
    )

    sync_max_retries: int = Field(default=3, ge=0, le=10)
    sync_backoff_seconds: float = Field(default=0.5, ge=0)

    audit_confirm_runs: int = Field(default=2, ge=1, le=10)

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        # Per-product advisory locks only exist on a real database server.
        if self.database_url.startswith("sqlite"):
            raise ValueError(
                "sqlite is only supported in dev mode; set env var: EL_DATABASE_URL"
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
