"""
Notification service for the event-driven pipeline.

This service subscribes to spread and interpretation events and turns them
into notifications for spread owners. It owns its notification store and
the live broadcaster; it never touches another service's data.

Design decisions:
- Everything the service needs travels in the event (the spread author id
  comes with the interpretation), so handling never queries back the
  divination service
- Notifications are unique per interpretation, so a redelivered event is
  acknowledged without a second row or a second push
- Persisting is the outcome that matters; the live push is best-effort and
  can never undo or retry a committed notification
- Both consumers use the SKIP policy with a dead-letter topic: one bad
  record must not hold back everybody else's notifications

Key insight:
- The divination service publishes "interpretation created" and does not
  know notifications exist. All "when to notify" logic is HERE.
"""

import logging
from typing import Optional
from uuid import UUID

from event_driven.broadcaster import LiveBroadcaster
from event_driven.consumer import DeadLetterSink, ErrorPolicy, EventConsumer
from event_driven.event_log import EventLog
from event_driven.events import DomainEvent, InterpretationCreated, SpreadCreated, Topics, UserDeleted
from shared.config import PipelineSettings
from shared.data_store import NotificationStore
from shared.models import Notification, NotificationDto, NotificationType

logger = logging.getLogger("notification_service")

NEW_INTERPRETATION_TITLE = "New interpretation on your spread"


def new_interpretation_message(author_username: str, text_preview: str) -> str:
    return f'{author_username} added an interpretation: "{text_preview}..."'


class NotificationMaterializer:
    """Turns InterpretationCreated events into persisted, pushed notifications."""

    def __init__(self, store: NotificationStore, broadcaster: LiveBroadcaster):
        self.store = store
        self.broadcaster = broadcaster

    def materialize(self, event: InterpretationCreated) -> Optional[Notification]:
        """
        Create the notification for ``event``, if one is due.

        Returns:
            The new notification, or None when the author interpreted their
            own spread or the event was already materialized.

        Raises:
            Whatever the store raises; the consumer's error policy decides.
        """
        if event.spread_author_id == event.interpretation_author_id:
            logger.debug(f"Interpretation {event.interpretation_id} is by the spread author, no notification")
            return None

        notification = Notification(
            user_id=event.spread_author_id,
            type=NotificationType.NEW_INTERPRETATION,
            title=NEW_INTERPRETATION_TITLE,
            message=new_interpretation_message(event.interpretation_author_username, event.text_preview),
            spread_id=event.spread_id,
            interpretation_id=event.interpretation_id,
        )
        if not self.store.insert_unique(notification):
            logger.info(f"Notification for interpretation {event.interpretation_id} already exists, skipping")
            return None

        logger.info(f"Created notification {notification.id} for user {notification.user_id}")
        self._push(notification)
        return notification

    def _push(self, notification: Notification) -> None:
        try:
            self.broadcaster.broadcast(notification.user_id, NotificationDto.from_notification(notification))
        except Exception as exc:
            logger.warning(f"Live push of notification {notification.id} failed: {exc}")


class NotificationService:
    """
    Event-driven notification service.

    Example:
        service = NotificationService(event_log, NotificationStore(), LiveBroadcaster())
        await service.start()     # consumers for spread and interpretation events
        ...
        await service.stop()
    """

    def __init__(
        self,
        event_log: EventLog,
        store: NotificationStore,
        broadcaster: LiveBroadcaster,
        settings: Optional[PipelineSettings] = None,
    ):
        self.event_log = event_log
        self.store = store
        self.broadcaster = broadcaster
        self.settings = settings or PipelineSettings()
        self.materializer = NotificationMaterializer(store, broadcaster)
        self.consumers = self._build_consumers()

    def _build_consumers(self) -> list[EventConsumer]:
        dead_letters = DeadLetterSink(self.event_log.producer(), self.settings.dead_letter_suffix)
        return [
            EventConsumer.from_settings(
                f"notifications-{topic}",
                self.event_log,
                topic,
                self.settings.notification_group_id,
                self.handle,
                self.settings,
                error_policy=ErrorPolicy.SKIP,
                dead_letters=dead_letters,
            )
            for topic in (Topics.SPREAD_EVENTS, Topics.INTERPRETATION_EVENTS)
        ]

    async def start(self) -> None:
        for consumer in self.consumers:
            consumer.start()
        logger.info("NotificationService started - subscribed to events")

    async def stop(self) -> None:
        for consumer in self.consumers:
            await consumer.stop()
        logger.info("NotificationService stopped")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def handle(self, event: DomainEvent) -> None:
        """Dispatch one decoded event. Every event variant must have a branch."""
        if isinstance(event, InterpretationCreated):
            logger.info(f"Handling InterpretationCreated: interpretation={event.interpretation_id}")
            self.materializer.materialize(event)
        elif isinstance(event, SpreadCreated):
            # Nobody follows authors yet, so a new spread notifies no one
            logger.info(f"Handling SpreadCreated: spread={event.spread_id}, no followers to notify")
        elif isinstance(event, UserDeleted):
            # Notifications are kept; the pipeline never deletes them
            logger.debug(f"Ignoring UserDeleted for user {event.user_id}")
        else:
            raise TypeError(f"NotificationService has no handler for {type(event).__name__}")

    # =========================================================================
    # Pull API
    # =========================================================================

    def list_for_user(self, user_id: UUID, is_read: Optional[bool] = None) -> list[NotificationDto]:
        return [NotificationDto.from_notification(n) for n in self.store.list_for_user(user_id, is_read)]

    def unread_count(self, user_id: UUID) -> int:
        return self.store.unread_count(user_id)

    def health(self) -> dict:
        return {consumer.name: consumer.state.snapshot() for consumer in self.consumers}
