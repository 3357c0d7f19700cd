"""
Event-driven consistency pipeline.

This package propagates state changes between the tarot services:
- Services commit to their own storage, then publish events to the log
- Consumers subscribe per topic, decode events and dispatch them
- The notification service materializes notifications and pushes them live
- The divination service cascades user deletions
"""

from event_driven.broadcaster import LiveBroadcaster
from event_driven.cascade_delete import CascadeDeleteExecutor
from event_driven.consumer import DeadLetterSink, ErrorPolicy, EventConsumer
from event_driven.event_log import InMemoryEventLog, create_event_log
from event_driven.events import (
    DomainEvent,
    InterpretationCreated,
    SpreadCreated,
    Topics,
    UserDeleted,
    decode,
    encode,
)
from event_driven.notification_service import NotificationMaterializer, NotificationService
from event_driven.publisher import Ack, EventPublisher

__all__ = [
    "DomainEvent",
    "SpreadCreated",
    "InterpretationCreated",
    "UserDeleted",
    "Topics",
    "encode",
    "decode",
    "InMemoryEventLog",
    "create_event_log",
    "EventPublisher",
    "Ack",
    "EventConsumer",
    "ErrorPolicy",
    "DeadLetterSink",
    "LiveBroadcaster",
    "NotificationMaterializer",
    "NotificationService",
    "CascadeDeleteExecutor",
]
