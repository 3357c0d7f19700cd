"""
Domain models for the tarot platform services.

Each aggregate is owned by exactly one service:
- User is owned by the user service
- Spread, SpreadCard and Interpretation are owned by the divination service
- Notification is owned by the notification service

Design decisions:
- Using Pydantic for validation and serialization
- Services never share these rows; they learn about each other's changes
  only through domain events
- Transport shapes (NotificationDto) use camelCase on the wire
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current UTC instant."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class NotificationType(str, Enum):
    """Kinds of notifications a user can receive."""
    NEW_INTERPRETATION = "NEW_INTERPRETATION"  # Someone interpreted your spread
    NEW_SPREAD = "NEW_SPREAD"                  # Reserved for followers (not produced yet)


# =============================================================================
# User service
# =============================================================================

class User(BaseModel):
    """A registered user. Only the fields the pipeline needs are modelled."""
    id: UUID = Field(default_factory=uuid4)
    username: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Divination service
# =============================================================================

class Spread(BaseModel):
    """
    A tarot spread laid out by a user.

    Deleting a spread removes its card placements and every interpretation
    attached to it (storage-level cascade).
    """
    id: UUID = Field(default_factory=uuid4)
    author_id: UUID = Field(..., description="User who laid out the spread")
    question: Optional[str] = Field(default=None)
    layout_type_name: str = Field(..., description="e.g. 'Celtic Cross'")
    cards_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)


class SpreadCard(BaseModel):
    """Placement of one card at one position of a spread."""
    id: UUID = Field(default_factory=uuid4)
    spread_id: UUID
    card_name: str
    position: int = Field(..., ge=0)
    is_reversed: bool = False


class Interpretation(BaseModel):
    """A reading of a spread, written by its author or by another user."""
    id: UUID = Field(default_factory=uuid4)
    spread_id: UUID
    author_id: UUID
    text: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Notification service
# =============================================================================

class Notification(BaseModel):
    """
    A persisted notification for one recipient.

    Created only by the notification materializer. The pipeline never deletes
    notifications; reading them is done through the pull API.
    """
    id: UUID = Field(default_factory=uuid4)
    user_id: UUID = Field(..., description="Recipient")
    type: NotificationType
    title: str
    message: str
    spread_id: Optional[UUID] = None
    interpretation_id: Optional[UUID] = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class NotificationDto(BaseModel):
    """Transport shape pushed over live channels and returned by the pull API."""
    id: UUID
    type: NotificationType
    title: str
    message: str
    spread_id: Optional[UUID] = None
    interpretation_id: Optional[UUID] = None
    is_read: bool = False
    created_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationDto":
        return cls(
            id=notification.id,
            type=notification.type,
            title=notification.title,
            message=notification.message,
            spread_id=notification.spread_id,
            interpretation_id=notification.interpretation_id,
            is_read=notification.is_read,
            created_at=notification.created_at,
        )

    def to_json(self) -> str:
        """camelCase JSON, as written to websocket clients."""
        return self.model_dump_json(by_alias=True)
