"""
File: config.py
Purpose: Centralized configuration using environment variables (12-factor).
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Load service configuration from environment variables."""
    ENV: str = "prod"
    SERVICE_NAME: str = "incident-engine"
    LOG_LEVEL: str = "INFO"
    SDK_LOG_LEVEL: str = "WARNING"  # azure / uamqp / httpx / apscheduler

    # Roles hosted by this process
    RUN_ENGINE: bool = True        # event consumer + auto-resolve sweeper
    RUN_AI_WORKER: bool = True     # AI job processor

    # Postgres
    DATABASE_URL: Optional[str] = None  # overrides the PG_* fields when set
    PG_HOST: str = "localhost"
    PG_PORT: int = 5432
    PG_DB: str = "signals"
    PG_USER: str = "signals"
    PG_PASS: str = ""
    PG_SSLMODE: str = "prefer"
    PG_POOL_MIN: int = 1
    PG_POOL_MAX: int = 10
    AUTO_CREATE_SCHEMA: bool = False  # migrations own the schema in prod

    # Event Hubs (raw events in, job notifications out)
    EVENTHUB_CONN: str = ""
    EVENTHUB_NAME: str = "signals-raw-v1"
    EVENTHUB_CONSUMER: str = "$Default"
    AI_JOBS_EVENTHUB_NAME: str = "signals-ai-jobs-v1"
    AI_JOBS_CONSUMER: str = "$Default"

    # Blob checkpoint store; required to run more than one replica per consumer group
    CHECKPOINT_STORE_CONN: str = ""
    CHECKPOINT_CONTAINER: str = "eventhub-checkpoints"

    # Inference provider (OpenAI-compatible chat completions)
    LLM_BASE_URL: str = ""
    LLM_API_KEY: str = ""
    LLM_MODEL: str = ""
    LLM_TIMEOUT: float = 90.0
    LLM_MAX_TOKENS: int = 1024
    LLM_TEMPERATURE: float = 0.7
    LLM_VALIDATE_ON_START: bool = True

    # Tracing: "console" prints spans, "none" keeps them in-process
    OTEL_EXPORTER: str = "none"

    # Background cadence
    AUTO_RESOLVE_INTERVAL_SECS: int = 300
    STALE_AFTER_MINUTES: int = 15
    JOB_POLL_INTERVAL_SECS: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def SQLALCHEMY_URL(self) -> str:
        """Return SQLAlchemy URL for Postgres (psycopg2) unless DATABASE_URL is set."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.PG_USER}:{self.PG_PASS}"
            f"@{self.PG_HOST}:{self.PG_PORT}/{self.PG_DB}?sslmode={self.PG_SSLMODE}"
        )

    @property
    def llm_configured(self) -> bool:
        return bool(self.LLM_BASE_URL and self.LLM_MODEL)
