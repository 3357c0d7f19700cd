"""
Shared infrastructure for the tarot platform services.

This package contains code used by every service in the pipeline:
- Domain models (User, Spread, Interpretation, Notification...)
- In-memory per-service stores
- Push channels for live notifications
- The error taxonomy and runtime configuration
"""

from shared.channels import PushChannel, RecordingChannel
from shared.config import PipelineSettings, configure_logging
from shared.data_store import DivinationStore, NotificationStore, UserStore
from shared.models import (
    Interpretation,
    Notification,
    NotificationDto,
    NotificationType,
    Spread,
    SpreadCard,
    User,
)

__all__ = [
    "Interpretation",
    "Notification",
    "NotificationDto",
    "NotificationType",
    "Spread",
    "SpreadCard",
    "User",
    "DivinationStore",
    "NotificationStore",
    "UserStore",
    "PushChannel",
    "RecordingChannel",
    "PipelineSettings",
    "configure_logging",
]
