"""
Domain events and their wire envelope.

This module defines every event the services exchange, and the codec that
turns an event into a broker record and back.

Design decisions:
- Events are a closed set of Pydantic models discriminated by ``kind``;
  decoding yields exactly one variant or raises DecodeError
- Events are named in past tense (SpreadCreated, not CreateSpread)
- Events carry everything subscribers need, so nobody has to query back
  the publishing service (the spread author travels with the interpretation)
- Each variant declares its own topic, eventType header and aggregate key

Wire format:
- key: string form of the aggregate id (spreadId or userId), so all events
  for one aggregate land on the same partition and stay ordered
- value: UTF-8 JSON, camelCase fields
- headers: ``eventType`` (CREATED | UPDATED | DELETED) and ``timestamp``
  (ISO-8601). Headers are for operational filtering only.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, ClassVar, Literal, Mapping, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from shared.errors import DecodeError
from shared.models import utc_now

EVENT_TYPE_HEADER = "eventType"
TIMESTAMP_HEADER = "timestamp"


class EventType(str, Enum):
    """Values of the ``eventType`` header."""
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


class Topics:
    """One topic per aggregate kind."""
    SPREAD_EVENTS = "spread-events"
    INTERPRETATION_EVENTS = "interpretation-events"
    USERS_EVENTS = "users-events"


# =============================================================================
# Event variants
# =============================================================================

class DomainEvent(BaseModel):
    """
    Fields common to every event.

    Attributes:
        event_id: Unique identifier, generated when the event is built at publish time
        timestamp: UTC instant the event was built
    """
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: datetime = Field(default_factory=utc_now)

    topic: ClassVar[str]
    event_type: ClassVar[EventType]
    key_field: ClassVar[str]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    @property
    def key(self) -> str:
        """Partition key: the primary aggregate id."""
        return str(getattr(self, self.key_field))

    def __str__(self) -> str:
        return f"{type(self).__name__}(key={self.key}, id={str(self.event_id)[:8]})"


class SpreadCreated(DomainEvent):
    """Published by the divination service after a spread is committed."""
    kind: Literal["SpreadCreated"] = "SpreadCreated"
    spread_id: UUID
    author_id: UUID
    author_username: str
    question: Optional[str] = None
    layout_type_name: str
    cards_count: int

    topic: ClassVar[str] = Topics.SPREAD_EVENTS
    event_type: ClassVar[EventType] = EventType.CREATED
    key_field: ClassVar[str] = "spread_id"


class InterpretationCreated(DomainEvent):
    """
    Published by the divination service after an interpretation is committed.

    Keyed by spread id, so interpretations of one spread stay in order.
    """
    kind: Literal["InterpretationCreated"] = "InterpretationCreated"
    interpretation_id: UUID
    spread_id: UUID
    spread_author_id: UUID
    interpretation_author_id: UUID
    interpretation_author_username: str
    text_preview: str

    topic: ClassVar[str] = Topics.INTERPRETATION_EVENTS
    event_type: ClassVar[EventType] = EventType.CREATED
    key_field: ClassVar[str] = "spread_id"


class UserDeleted(DomainEvent):
    """Published by the user service after a user row is deleted."""
    kind: Literal["UserDeleted"] = "UserDeleted"
    user_id: UUID

    topic: ClassVar[str] = Topics.USERS_EVENTS
    event_type: ClassVar[EventType] = EventType.DELETED
    key_field: ClassVar[str] = "user_id"


EVENT_CLASSES: tuple[type[DomainEvent], ...] = (SpreadCreated, InterpretationCreated, UserDeleted)

AnyDomainEvent = Annotated[
    Union[SpreadCreated, InterpretationCreated, UserDeleted],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(AnyDomainEvent)


# =============================================================================
# Envelope codec
# =============================================================================

@dataclass(frozen=True)
class Envelope:
    """An event ready to be appended to the log."""
    topic: str
    key: str
    value: bytes
    headers: dict[str, str]


def encode(event: DomainEvent) -> Envelope:
    """Turn an event into the record that is appended to its topic."""
    return Envelope(
        topic=event.topic,
        key=event.key,
        value=event.model_dump_json(by_alias=True).encode("utf-8"),
        headers={
            EVENT_TYPE_HEADER: event.event_type.value,
            TIMESTAMP_HEADER: event.timestamp.isoformat(),
        },
    )


def decode(value: bytes, headers: Mapping[str, Union[str, bytes]]) -> DomainEvent:
    """
    Turn a record back into a domain event.

    Raises:
        DecodeError: unknown or missing eventType header, malformed JSON,
            unknown kind, invalid fields, or a header that disagrees with
            the decoded variant.
    """
    raw_type = _header(headers, EVENT_TYPE_HEADER)
    if raw_type is None:
        raise DecodeError("record has no eventType header")
    try:
        header_type = EventType(raw_type)
    except ValueError:
        raise DecodeError(f"unknown eventType header: {raw_type!r}") from None

    try:
        event = _event_adapter.validate_json(value)
    except ValidationError as exc:
        raise DecodeError(f"invalid event payload ({exc.error_count()} error(s)): {exc}") from exc

    if event.event_type != header_type:
        raise DecodeError(
            f"eventType header {header_type.value} does not match {type(event).__name__}"
        )
    return event


def _header(headers: Mapping[str, Union[str, bytes]], name: str) -> Optional[str]:
    value = headers.get(name)
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError(f"header {name} is not valid UTF-8") from None
    return value
