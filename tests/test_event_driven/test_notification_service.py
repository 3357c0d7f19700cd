"""
Tests for the notification service.

These tests verify WHEN a notification is created (and when not), that
redelivered events stay idempotent, and that a failed live push never
undoes a stored notification.
"""

from uuid import uuid4

import pytest

from event_driven.broadcaster import LiveBroadcaster
from event_driven.consumer import ErrorPolicy
from event_driven.events import EVENT_CLASSES, DomainEvent, Topics, UserDeleted
from event_driven.notification_service import (
    NEW_INTERPRETATION_TITLE,
    NotificationMaterializer,
    NotificationService,
    new_interpretation_message,
)
from shared.channels import RecordingChannel
from shared.data_store import NotificationStore
from shared.models import NotificationType


@pytest.fixture
def service(event_log, notification_store, broadcaster, settings) -> NotificationService:
    return NotificationService(event_log, notification_store, broadcaster, settings)


class TestNotificationMaterializer:
    """Tests for turning InterpretationCreated into notifications."""

    @pytest.fixture
    def materializer(self, notification_store, broadcaster) -> NotificationMaterializer:
        return NotificationMaterializer(notification_store, broadcaster)

    def test_notifies_spread_author(
        self, materializer, notification_store: NotificationStore, make_interpretation_created, alice_id
    ):
        """Test Bob interpreting Alice's spread creates one unread notification for Alice."""
        event = make_interpretation_created()

        notification = materializer.materialize(event)

        assert notification is not None
        assert notification.user_id == alice_id
        assert notification.type is NotificationType.NEW_INTERPRETATION
        assert notification.title == NEW_INTERPRETATION_TITLE
        assert notification.message == 'bob added an interpretation: "The Tower in the middle means a sudden change..."'
        assert notification.spread_id == event.spread_id
        assert notification.interpretation_id == event.interpretation_id
        assert notification.is_read is False
        assert notification_store.unread_count(alice_id) == 1

    def test_self_interpretation_is_silent(
        self, materializer, notification_store, broadcaster, make_interpretation_created, alice_id
    ):
        """Test an author interpreting their own spread gets no notification and no push."""
        channel = RecordingChannel()
        broadcaster.register(alice_id, channel)

        result = materializer.materialize(
            make_interpretation_created(interpretation_author_id=alice_id, interpretation_author_username="alice")
        )

        assert result is None
        assert notification_store.notifications.count() == 0
        assert channel.get_sent_count() == 0

    def test_replayed_event_creates_one_row(
        self, materializer, notification_store, broadcaster, make_interpretation_created, alice_id
    ):
        """Test a redelivered event is acknowledged without a second row or push."""
        channel = RecordingChannel()
        broadcaster.register(alice_id, channel)
        event = make_interpretation_created()

        first = materializer.materialize(event)
        second = materializer.materialize(event)

        assert first is not None
        assert second is None
        assert notification_store.notifications.count() == 1
        assert channel.get_sent_count() == 1

    def test_pushes_dto_to_author(self, materializer, broadcaster, make_interpretation_created, alice_id):
        channel = RecordingChannel()
        broadcaster.register(alice_id, channel)

        notification = materializer.materialize(make_interpretation_created())

        pushed = channel.last_json()
        assert pushed["id"] == str(notification.id)
        assert pushed["type"] == "NEW_INTERPRETATION"
        assert pushed["isRead"] is False

    def test_broken_channel_does_not_undo_notification(
        self, materializer, notification_store, broadcaster, make_interpretation_created, alice_id
    ):
        """Test a push failure leaves the stored notification in place."""
        broadcaster.register(alice_id, RecordingChannel(fail_writes=True))

        notification = materializer.materialize(make_interpretation_created())

        assert notification is not None
        assert notification_store.find_by_interpretation_id(notification.interpretation_id) is not None

    def test_broadcaster_crash_is_swallowed(self, notification_store, make_interpretation_created, alice_id):
        class ExplodingBroadcaster(LiveBroadcaster):
            def broadcast(self, user_id, message):
                raise RuntimeError("registry corrupted")

        materializer = NotificationMaterializer(notification_store, ExplodingBroadcaster())

        assert materializer.materialize(make_interpretation_created()) is not None
        assert notification_store.unread_count(alice_id) == 1

    def test_message_format(self):
        assert new_interpretation_message("bob", "Hidden fears") == 'bob added an interpretation: "Hidden fears..."'


class TestNotificationServiceDispatch:
    """Tests for event dispatch."""

    def test_every_event_variant_has_a_handler(
        self, service: NotificationService, spread_created, user_deleted, make_interpretation_created
    ):
        """Test dispatch covers the whole closed set of events."""
        samples = {type(e): e for e in (spread_created, user_deleted, make_interpretation_created())}

        assert set(samples) == set(EVENT_CLASSES)
        for event in samples.values():
            service.handle(event)

    def test_unknown_event_type_raises(self, service: NotificationService):
        class Mystery(DomainEvent):
            pass

        with pytest.raises(TypeError):
            service.handle(Mystery())

    def test_spread_created_notifies_nobody(self, service, notification_store, spread_created):
        service.handle(spread_created)

        assert notification_store.notifications.count() == 0

    def test_user_deleted_keeps_notifications(self, service, notification_store, make_interpretation_created, alice_id):
        service.handle(make_interpretation_created())

        service.handle(UserDeleted(user_id=alice_id))

        assert notification_store.notifications.count() == 1

    def test_subscribes_to_spread_and_interpretation_events(self, service: NotificationService):
        assert {c.topic for c in service.consumers} == {Topics.SPREAD_EVENTS, Topics.INTERPRETATION_EVENTS}
        assert all(c.error_policy is ErrorPolicy.SKIP for c in service.consumers)
        assert all(c.group_id == "notification-service" for c in service.consumers)


class TestNotificationServicePullApi:
    """Tests for list and count."""

    def test_list_for_user_and_unread_count(self, service, make_interpretation_created, alice_id, bob_id):
        service.handle(make_interpretation_created())
        service.handle(make_interpretation_created())

        assert len(service.list_for_user(alice_id)) == 2
        assert service.list_for_user(alice_id, is_read=True) == []
        assert service.unread_count(alice_id) == 2
        assert service.unread_count(bob_id) == 0


class TestNotificationServiceConsumers:
    """Tests for the service running against the event log."""

    @pytest.mark.asyncio
    async def test_consumes_published_interpretations(
        self, service, publisher, notification_store, broadcaster, make_interpretation_created, alice_id, wait_until
    ):
        channel = RecordingChannel()
        broadcaster.register(alice_id, channel)
        await service.start()

        publisher.publish(make_interpretation_created())
        publisher.publish(make_interpretation_created(interpretation_id=uuid4()))

        assert await wait_until(lambda: channel.get_sent_count() == 2)
        await service.stop()

        assert notification_store.unread_count(alice_id) == 2
        health = service.health()
        assert health["notifications-interpretation-events"]["processed"] == 2
        assert health["notifications-spread-events"]["status"] == "stopped"
