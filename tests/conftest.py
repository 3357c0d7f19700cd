"""
Shared pytest fixtures for the event pipeline tests.

These fixtures provide fresh stores, an in-memory event log and fast
consumer settings so nothing leaks between tests.
"""

import asyncio
import time
from typing import Callable
from uuid import UUID, uuid4

import pytest

from event_driven.broadcaster import LiveBroadcaster
from event_driven.event_log import InMemoryEventLog
from event_driven.events import InterpretationCreated, SpreadCreated, UserDeleted
from event_driven.publisher import EventPublisher
from shared.config import PipelineSettings
from shared.data_store import DivinationStore, NotificationStore, UserStore


@pytest.fixture
def settings() -> PipelineSettings:
    """Settings with short backoffs and polls, ignoring any local .env file."""
    return PipelineSettings(
        _env_file=None,
        backoff_initial_seconds=0.01,
        backoff_max_seconds=0.05,
        poll_timeout_seconds=0.05,
        shutdown_timeout_seconds=2.0,
        send_timeout_seconds=1.0,
    )


@pytest.fixture
def event_log(settings: PipelineSettings) -> InMemoryEventLog:
    """Fresh in-memory log for each test."""
    return InMemoryEventLog(partitions=settings.partitions)


@pytest.fixture
def publisher(event_log: InMemoryEventLog, settings: PipelineSettings):
    """Publisher appending to the test's event log."""
    publisher = EventPublisher(event_log.producer(), send_timeout=settings.send_timeout_seconds)
    yield publisher
    publisher.close()


@pytest.fixture
def user_store() -> UserStore:
    return UserStore()


@pytest.fixture
def divination_store() -> DivinationStore:
    return DivinationStore()


@pytest.fixture
def notification_store() -> NotificationStore:
    return NotificationStore()


@pytest.fixture
def broadcaster() -> LiveBroadcaster:
    return LiveBroadcaster()


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def alice_id() -> UUID:
    """User ID for Alice (lays out spreads)."""
    return UUID("00000000-0000-0000-0000-0000000a11ce")


@pytest.fixture
def bob_id() -> UUID:
    """User ID for Bob (interprets other people's spreads)."""
    return UUID("00000000-0000-0000-0000-000000000b0b")


@pytest.fixture
def spread_id() -> UUID:
    """A spread laid out by Alice."""
    return UUID("00000000-0000-0000-0000-0000005b7ead")


# =============================================================================
# Event Factories
# =============================================================================

@pytest.fixture
def make_interpretation_created(alice_id: UUID, bob_id: UUID, spread_id: UUID):
    """Build InterpretationCreated events; Bob on Alice's spread by default."""
    def _make(**overrides) -> InterpretationCreated:
        fields = dict(
            interpretation_id=uuid4(),
            spread_id=spread_id,
            spread_author_id=alice_id,
            interpretation_author_id=bob_id,
            interpretation_author_username="bob",
            text_preview="The Tower in the middle means a sudden change",
        )
        fields.update(overrides)
        return InterpretationCreated(**fields)

    return _make


@pytest.fixture
def spread_created(alice_id: UUID, spread_id: UUID) -> SpreadCreated:
    return SpreadCreated(
        spread_id=spread_id,
        author_id=alice_id,
        author_username="alice",
        question="Where is my career going?",
        layout_type_name="Past / Present / Future",
        cards_count=3,
    )


@pytest.fixture
def user_deleted(alice_id: UUID) -> UserDeleted:
    return UserDeleted(user_id=alice_id)


# =============================================================================
# Async helpers
# =============================================================================

@pytest.fixture
def wait_until():
    """Poll a condition from async tests until it holds or the timeout expires."""

    async def _wait(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while not condition():
            if time.monotonic() > deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    return _wait
