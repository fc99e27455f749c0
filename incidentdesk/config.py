"""IncidentDesk configuration system using Pydantic Settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IncidentDeskConfig(BaseSettings):
    """Main configuration class. Loads from .env file and environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "IncidentDesk"
    debug: bool = False
    host: str = "127.0.0.1"
    port: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./incidentdesk.db"
    db_busy_timeout: int = 30  # seconds sqlite waits on a locked database

    # Auth (tokens are issued by the external identity provider)
    secret_key: str = "CHANGE_ME_IN_PRODUCTION"
    jwt_algorithm: str = "HS256"

    # Store
    operation_timeout_seconds: float = 10.0
    store_max_cas_retries: int = 5

    # Notifications
    notification_feed_limit: int = 50

    # Live queries
    live_queue_size: int = 100
    ws_heartbeat_interval: int = 30

    # Categories
    seed_default_categories: bool = True

    # Logging
    log_dir: str = "logs"
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("operation_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("operation_timeout_seconds must be positive")
        return v

    @field_validator("store_max_cas_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("store_max_cas_retries must be at least 1")
        return v

    @property
    def base_dir(self) -> Path:
        return Path(__file__).resolve().parent.parent


def get_config() -> IncidentDeskConfig:
    """Factory function to create config instance."""
    return IncidentDeskConfig()
