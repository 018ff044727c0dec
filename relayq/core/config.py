"""Runtime settings for queue workers, scheduler and messaging.

Values come from the environment (``RELAYQ_`` prefix) or a ``.env`` file.
Components take the values they need as constructor arguments; this module
only builds the settings object, it does not cache one.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SERVICE_NAME: str = "relayq"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    REDIS_URL: str = "redis://localhost:6379/0"
    DATABASE_URL: Optional[str] = None

    # Job queue
    WORKER_COUNT: int = Field(default=3, ge=1)
    REDIS_KEY_PREFIX: str = "job:"
    PROCESSING_TIMEOUT_SECONDS: float = Field(default=600.0, gt=0)
    RETRY_DELAY_BASE_SECONDS: float = Field(default=1.0, gt=0)
    RETRY_DELAY_MAX_SECONDS: float = Field(default=300.0, gt=0)
    MAX_RETRIES: int = Field(default=3, ge=0)
    DEQUEUE_TIMEOUT_SECONDS: float = Field(default=1.0, ge=0)
    WORKER_QUEUES: List[str] = ["default"]
    JOB_TIMEOUT_SECONDS: Optional[float] = None

    # Scheduler and sweeper
    SCHEDULER_TICK_SECONDS: float = Field(default=1.0, gt=0)
    VISIBILITY_SWEEP_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)

    # Outbox relay
    OUTBOX_BATCH_SIZE: int = Field(default=10, ge=1)
    OUTBOX_RETRY_DELAY_SECONDS: float = Field(default=5.0, ge=0)
    OUTBOX_POLL_INTERVAL_SECONDS: float = Field(default=1.0, gt=0)
    TOPIC_MAPPING: Dict[str, str] = {}

    # Inbox and deduplication
    DEDUP_DEFAULT_TTL_SECONDS: float = Field(default=86400.0, gt=0)
    INBOX_RECEIVED_POLICY: Literal["skip", "retry"] = "skip"

    model_config = SettingsConfigDict(
        env_prefix="RELAYQ_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def load_settings(**overrides) -> Settings:
    """Build a fresh settings object, applying keyword overrides last."""
    return Settings(**overrides)


__all__ = ["Settings", "load_settings"]
