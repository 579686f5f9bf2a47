import json
import os
import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_int_list(raw: Any) -> list[int]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        return [int(v) for v in raw]
    if isinstance(raw, int):
        return [raw]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate "3,7" or "3 7" style values.
    if raw.startswith("["):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return [int(v) for v in parsed]

    return [int(p) for p in re.split(r"[,\s]+", raw.strip("[]")) if p]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "examprep"
    db_password: str = "examprep"
    db_name: str = "examprep"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 10  # Seconds to wait for a pooled connection
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True

    # SQLite pool settings (file-based SQLite during tests)
    db_sqlite_pool_size: int = 5
    db_sqlite_max_overflow: int = 5

    # Per-command timeout; bounds the creation transaction
    db_command_timeout: float = 15.0

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (optional, in-memory cache when disabled)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    cache_timeout_seconds: float = 0.5

    # Session creation coordinator
    session_creation_lock_ttl_seconds: int = 30
    idempotency_ttl_seconds: int = 300  # 5 minutes
    question_pool_ttl_seconds: int = 1800  # 30 minutes
    quota_cache_ttl_seconds: int = 120
    lock_contention_retry_after_seconds: int = 1
    default_question_count: int = 10
    max_question_count: int = 200

    # Quota ledger
    free_plan_code: str = "free"
    free_plan_daily_limit: int = 3

    # Freemium gate
    freemium_subject_ids: Annotated[list[int], NoDecode] = [3]
    freemium_topic_limit: int = 2

    @field_validator("freemium_subject_ids", mode="before")
    @classmethod
    def decode_freemium_subject_ids(cls, v: Any) -> list[int]:
        return _parse_int_list(v)

    # Transient database error retry
    db_retry_max_attempts: int = 3
    db_retry_base_delay: float = 1.0
    db_retry_max_delay: float = 8.0

    # Abandoned session sweep
    sweep_enabled: bool = True
    abandoned_session_hours: float = 2.0
    sweep_interval_seconds: int = 300

    @field_validator(
        "session_creation_lock_ttl_seconds",
        "idempotency_ttl_seconds",
        "question_pool_ttl_seconds",
        "quota_cache_ttl_seconds",
    )
    @classmethod
    def validate_ttl_positive(cls, v: int) -> int:
        """Validate cache TTLs are positive."""
        if v < 1:
            raise ValueError("TTL values must be at least 1 second")
        return v

    @field_validator("free_plan_daily_limit", "freemium_topic_limit", "db_retry_max_attempts")
    @classmethod
    def validate_limit_positive(cls, v: int) -> int:
        """Validate limits are positive."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator("db_retry_base_delay", "db_retry_max_delay")
    @classmethod
    def validate_delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delays cannot be negative")
        return v

    @field_validator("db_pool_size", "db_max_overflow", "db_sqlite_pool_size", "db_sqlite_max_overflow")
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate pool_size is positive."""
        if v < 1:
            raise ValueError("pool size values must be at least 1")
        return v

    @field_validator("sweep_interval_seconds")
    @classmethod
    def validate_sweep_interval(cls, v: int) -> int:
        """Validate sweep interval is reasonable."""
        if v < 10:
            raise ValueError("sweep_interval_seconds should be at least 10 seconds")
        if v > 86400:
            raise ValueError("sweep_interval_seconds should not exceed 1 day")
        return v

    model_config = SettingsConfigDict(
        env_file=os.getenv("EXAMPREP_ENV_FILE", ".env"), extra="ignore"
    )


# Global settings instance
settings = Settings()
