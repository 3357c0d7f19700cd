"""
Runtime configuration for the event pipeline.

Every knob the publishers, consumers and services read lives here, loaded from
environment variables prefixed with ``TAROT_`` (or a ``.env`` file).

Examples:
    TAROT_BROKER_BACKEND=redis
    TAROT_REDIS_URL=redis://localhost:6379/0
    TAROT_BACKOFF_MAX_SECONDS=30
"""

import logging
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"


class PipelineSettings(BaseSettings):
    """Configuration for the event log, publishers, consumers and services."""

    log_level: str = Field(default="INFO", description="Root log level")

    # Broker
    broker_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Event log backend: in-process or Redis Streams",
    )
    redis_url: str = Field(default="redis://localhost:6379/0")
    partitions: int = Field(default=3, ge=1, le=64, description="Partitions per topic")
    stream_max_length: int = Field(
        default=100_000,
        ge=1,
        description="Approximate MAXLEN applied on each Redis stream append",
    )
    partition_lease_seconds: float = Field(
        default=10.0,
        gt=0,
        description="How long a Redis consumer owns a partition without renewing its lease",
    )

    # Dead letters
    dead_letter_suffix: str = ".DLT"

    # Consumer groups
    notification_group_id: str = "notification-service"
    divination_group_id: str = "divination-service"

    # Publisher
    send_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How long publish() waits for a broker acknowledgment",
    )

    # Consumer / supervisor
    backoff_initial_seconds: float = Field(default=1.0, gt=0)
    backoff_max_seconds: float = Field(default=60.0, gt=0)
    poll_timeout_seconds: float = Field(default=0.5, gt=0)
    max_poll_records: int = Field(default=100, ge=1)
    max_pending_per_partition: int = Field(default=100, ge=1)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0)

    # Divination service
    text_preview_length: int = Field(default=100, ge=1)

    # Notification service
    websocket_write_timeout_seconds: float = Field(default=5.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="TAROT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def configure_logging(settings: Optional[PipelineSettings] = None) -> None:
    """Apply the shared log format to the root logger."""
    level = (settings.log_level if settings else "INFO").upper()
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
