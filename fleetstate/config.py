"""Datastore configuration."""
from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from FLEETSTATE_* environment variables."""

    # Database
    database_url: str = "sqlite:///./fleetstate.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_statement_timeout_ms: int = 30000

    # Transaction retry on deadlock / serialization failure
    db_retry_max_attempts: int = 5
    db_retry_backoff_base: float = 0.05  # seconds
    db_retry_backoff_max: float = 2.0  # seconds

    # Maximum payload-bearing result rows kept per scheduled query
    query_report_max_rows: int = 1000

    # Hostnames per INSERT ... SELECT when applying manual label specs.
    # Postgres caps bind parameters at 65535 per statement.
    label_membership_batch_size: int = 50000

    # Orphan label membership sweep
    membership_cleanup_interval: int = 3600  # seconds
    membership_cleanup_enabled: bool = True

    # Scheduler process
    metrics_port: int = 9109

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    class Config:
        env_prefix = "FLEETSTATE_"


settings = Settings()
