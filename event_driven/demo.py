"""
Demonstration scripts for the event-driven pipeline.

These functions run the services against an in-memory event log so the whole
flow is visible in one process: services commit and publish, consumers pick
the events up, notifications are stored and pushed, user data is cascaded.
"""

import asyncio
import time
from typing import Callable

from event_driven.broadcaster import LiveBroadcaster
from event_driven.event_log import InMemoryEventLog, InMemoryLogConsumer
from event_driven.events import Topics
from event_driven.notification_service import NotificationService
from event_driven.publisher import EventPublisher
from event_driven.services.divination import DivinationService
from event_driven.services.users import UserService
from shared.channels import RecordingChannel
from shared.config import PipelineSettings, configure_logging
from shared.data_store import DivinationStore, NotificationStore, UserStore
from shared.errors import TransientBrokerError

DEMO_SETTINGS = dict(
    backoff_initial_seconds=0.25,
    backoff_max_seconds=1.0,
    poll_timeout_seconds=0.1,
    shutdown_timeout_seconds=2.0,
)


async def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


def banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(f"EVENT-DRIVEN DEMO: {title}")
    print("=" * 70 + "\n")


def section(text: str) -> None:
    print("-" * 70)
    print(text)
    print("-" * 70 + "\n")


async def run_notification_demo():
    """
    Demonstrate the "New Interpretation" notification scenario.

    This shows:
    1. Alice lays out a spread (SpreadCreated, nobody to notify)
    2. Bob interprets it (InterpretationCreated)
    3. The notification service stores one notification for Alice and
       pushes it to her open channel
    4. Alice interpreting her own spread notifies nobody

    The key insight: DivinationService doesn't know about notifications!
    """
    banner("New Interpretation Notification")

    settings = PipelineSettings(**DEMO_SETTINGS)
    log = InMemoryEventLog(partitions=settings.partitions)
    publisher = EventPublisher(log.producer(), settings.send_timeout_seconds)
    users = UserService(UserStore(), publisher)
    divination = DivinationService(DivinationStore(), publisher, settings)
    notifications = NotificationStore()
    broadcaster = LiveBroadcaster()
    notification_service = NotificationService(log, notifications, broadcaster, settings)

    alice = users.create_user("alice")
    bob = users.create_user("bob")
    alice_screen = RecordingChannel("alice-browser")
    broadcaster.register(alice.id, alice_screen)

    await notification_service.start()
    print("Setup complete. NotificationService is listening for events.\n")

    section("ACTION: Alice lays out a three-card spread, Bob interprets it")
    spread = divination.create_spread(
        alice.id, alice.username, "Past / Present / Future",
        ["The Fool", "The Tower", "The Star"], question="Where is my career going?",
    )
    divination.add_interpretation(spread.id, bob.id, bob.username, "The Tower in the middle means a sudden change")
    divination.add_interpretation(spread.id, alice.id, alice.username, "I think the Star is about hope")

    await wait_until(lambda: log.lag(settings.notification_group_id, Topics.INTERPRETATION_EVENTS) == 0)
    await notification_service.stop()

    section("RESULT")
    print("Alice's notifications:")
    for dto in notification_service.list_for_user(alice.id):
        print(f"  [{dto.type.value}] {dto.title}: {dto.message}")
    print(f"Bob's notifications: {len(notification_service.list_for_user(bob.id))}")
    print(f"Frames pushed to Alice's browser: {alice_screen.get_sent_count()}")

    publisher.close()
    broadcaster.close()
    return notification_service.list_for_user(alice.id)


async def run_cascade_delete_demo():
    """
    Demonstrate the "User Deleted" cascade.

    This shows:
    1. Alice and Bob each have a spread; both interpret each other's
    2. The user service deletes Alice and publishes UserDeleted
    3. The divination service removes Alice's interpretations first, then her
       spreads with everything attached to them
    4. Bob keeps his spread; the notification service keeps its rows
    """
    banner("User Deleted Cascade")

    settings = PipelineSettings(**DEMO_SETTINGS)
    log = InMemoryEventLog(partitions=settings.partitions)
    publisher = EventPublisher(log.producer(), settings.send_timeout_seconds)
    users = UserService(UserStore(), publisher)
    store = DivinationStore()
    divination = DivinationService(store, publisher, settings)
    users_consumer = divination.users_consumer(log)

    alice = users.create_user("alice")
    bob = users.create_user("bob")
    alice_spread = divination.create_spread(alice.id, alice.username, "Single Card", ["The Moon"])
    bob_spread = divination.create_spread(bob.id, bob.username, "Single Card", ["The Sun"])
    divination.add_interpretation(alice_spread.id, bob.id, bob.username, "Hidden fears")
    divination.add_interpretation(bob_spread.id, alice.id, alice.username, "Joy ahead")

    users_consumer.start()
    print(f"Before: {store.spreads.count()} spreads, {store.interpretations.count()} interpretations\n")

    section("ACTION: Deleting Alice")
    users.delete_user(alice.id)

    await wait_until(lambda: log.lag(settings.divination_group_id, Topics.USERS_EVENTS) == 0)
    await users_consumer.stop()

    section("RESULT")
    print(f"After: {store.spreads.count()} spreads, {store.interpretations.count()} interpretations")
    print(f"Bob's spread still there: {store.spreads.find_by_id(bob_spread.id) is not None}")
    print(f"Interpretations on Bob's spread: {len(store.interpretations_for_spread(bob_spread.id))}")

    publisher.close()
    return store


class _UnreachableConsumer:
    """Consumer whose broker is down while ``available`` is unset."""

    def __init__(self, inner: InMemoryLogConsumer, available: asyncio.Event):
        self.inner = inner
        self.available = available

    async def connect(self) -> None:
        if not self.available.is_set():
            raise TransientBrokerError("connection refused")
        await self.inner.connect()

    def __getattr__(self, name):
        return getattr(self.inner, name)


class _OutageEventLog:
    """An InMemoryEventLog whose consumers cannot connect during an outage."""

    def __init__(self, log: InMemoryEventLog):
        self.log = log
        self.available = asyncio.Event()

    def producer(self):
        return self.log.producer()

    def consumer(self, topic: str, group_id: str, consumer_name: str = ""):
        return _UnreachableConsumer(self.log.consumer(topic, group_id, consumer_name), self.available)


async def run_outage_demo(outage_seconds: float = 2.0):
    """
    Demonstrate recovery after a broker outage.

    The notification service starts while its broker is unreachable. Its
    consumers back off with growing delays. Events published in the meantime
    wait in the log and are all delivered once the broker is back.
    """
    banner("Broker Outage and Recovery")

    settings = PipelineSettings(**DEMO_SETTINGS)
    log = InMemoryEventLog(partitions=settings.partitions)
    flaky = _OutageEventLog(log)
    publisher = EventPublisher(log.producer(), settings.send_timeout_seconds)
    users = UserService(UserStore(), publisher)
    divination = DivinationService(DivinationStore(), publisher, settings)
    notification_service = NotificationService(flaky, NotificationStore(), LiveBroadcaster(), settings)

    alice = users.create_user("alice")
    bob = users.create_user("bob")

    section("ACTION: Broker unreachable; Bob interprets three of Alice's spreads")
    await notification_service.start()
    for card in ("The Hermit", "Wheel of Fortune", "Justice"):
        spread = divination.create_spread(alice.id, alice.username, "Single Card", [card])
        divination.add_interpretation(spread.id, bob.id, bob.username, f"{card} speaks of balance")

    await asyncio.sleep(outage_seconds)
    print("Consumer states during the outage:")
    for name, state in notification_service.health().items():
        print(f"  {name}: {state['status']} (attempt {state['attempt']}, backoffs {state['backoff_history']})")

    section("ACTION: Broker is back")
    flaky.available.set()
    await wait_until(lambda: notification_service.unread_count(alice.id) == 3, timeout=10.0)
    await notification_service.stop()

    section("RESULT")
    print(f"Alice's unread notifications: {notification_service.unread_count(alice.id)}")
    for name, state in notification_service.health().items():
        print(f"  {name}: processed {state['processed']}, restarts {state['restarts']}")

    publisher.close()
    return notification_service


def run(scenario: str) -> None:
    """Run one scenario by name, or all of them."""
    configure_logging()
    scenarios = {
        "notification": run_notification_demo,
        "cascade-delete": run_cascade_delete_demo,
        "outage": run_outage_demo,
    }
    selected = list(scenarios.values()) if scenario == "all" else [scenarios[scenario]]
    for demo in selected:
        asyncio.run(demo())


if __name__ == "__main__":
    run("all")
