"""Application configuration."""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/syncbridge.db"

    # Encryption (only needed when the Odoo API key is stored encrypted)
    encryption_key: Optional[str] = None

    # Odoo
    odoo_url: str = "http://localhost:8069"
    odoo_database: str = "odoo"
    odoo_username: str = "admin"
    odoo_api_key: Optional[str] = None
    odoo_api_key_encrypted: Optional[str] = None
    odoo_timeout: float = 30.0

    # Queue processing
    batch_size: int = 50
    batch_time_limit: float = 55.0
    max_attempts: int = 3
    retry_base_delay: int = 60
    stale_job_seconds: int = 600
    push_lock_ttl: int = 30
    dry_run: bool = False

    # Circuit breaker
    circuit_failure_threshold: int = 3
    circuit_recovery_delay: int = 300
    circuit_probe_ttl: int = 60

    # Remote capability detection
    model_probe_ttl: int = 3600

    # Scheduler
    scheduler_enabled: bool = True
    queue_interval_seconds: int = 60
    poll_interval_seconds: int = 300

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000


settings = Settings()
