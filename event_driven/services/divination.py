"""
Divination service: spreads and interpretations.

Publishes SpreadCreated and InterpretationCreated after its own writes are
committed, and consumes UserDeleted to remove a deleted user's data.

Key insight:
- This service ONLY publishes events about its own aggregates
- It does not call the notification service, or even know it exists
- Publishing happens after the commit; a failed publish is logged and
  dropped by the publisher and never undoes the write

The users-events consumer uses the REDELIVER policy: a cascade that failed
half-way must be retried, and retrying is safe because deletes are
idempotent.
"""

import logging
from typing import Optional, Sequence
from uuid import UUID

from event_driven.cascade_delete import CascadeDeleteExecutor, CascadeResult
from event_driven.consumer import DeadLetterSink, ErrorPolicy, EventConsumer
from event_driven.event_log import EventLog
from event_driven.events import DomainEvent, InterpretationCreated, SpreadCreated, Topics, UserDeleted
from event_driven.publisher import EventPublisher
from shared.config import PipelineSettings
from shared.data_store import DivinationStore
from shared.models import Interpretation, Spread, SpreadCard

logger = logging.getLogger("divination_service")


class SpreadNotFoundError(LookupError):
    pass


class DivinationService:
    """
    Example:
        service = DivinationService(store, publisher)
        spread = service.create_spread(author_id, "alice", "Three Cards", ["The Fool", "The Sun", "Death"])
        service.add_interpretation(spread.id, bob_id, "bob", "A journey begins...")
    """

    def __init__(
        self,
        store: DivinationStore,
        publisher: EventPublisher,
        settings: Optional[PipelineSettings] = None,
    ):
        self.store = store
        self.publisher = publisher
        self.settings = settings or PipelineSettings()
        self.cascade = CascadeDeleteExecutor(store)

    # =========================================================================
    # Writes (commit, then publish)
    # =========================================================================

    def create_spread(
        self,
        author_id: UUID,
        author_username: str,
        layout_type_name: str,
        cards: Sequence[str],
        question: Optional[str] = None,
        reversed_positions: Sequence[int] = (),
    ) -> Spread:
        """Lay out a spread, store it with its card placements, publish SpreadCreated."""
        spread = Spread(
            author_id=author_id,
            question=question,
            layout_type_name=layout_type_name,
            cards_count=len(cards),
        )
        self.store.spreads.save(spread)
        for position, card_name in enumerate(cards):
            self.store.spread_cards.save(
                SpreadCard(
                    spread_id=spread.id,
                    card_name=card_name,
                    position=position,
                    is_reversed=position in reversed_positions,
                )
            )
        logger.info(f"Spread {spread.id} created by {author_username} ({len(cards)} cards)")

        self.publisher.publish(
            SpreadCreated(
                spread_id=spread.id,
                author_id=author_id,
                author_username=author_username,
                question=question,
                layout_type_name=layout_type_name,
                cards_count=spread.cards_count,
            )
        )
        return spread

    def add_interpretation(
        self,
        spread_id: UUID,
        author_id: UUID,
        author_username: str,
        text: str,
    ) -> Interpretation:
        """
        Store an interpretation and publish InterpretationCreated.

        Raises:
            SpreadNotFoundError: the spread does not exist
        """
        spread = self.store.spreads.find_by_id(spread_id)
        if spread is None:
            raise SpreadNotFoundError(f"Spread not found: {spread_id}")

        interpretation = self.store.interpretations.save(
            Interpretation(spread_id=spread_id, author_id=author_id, text=text)
        )
        logger.info(f"Interpretation {interpretation.id} added to spread {spread_id} by {author_username}")

        self.publisher.publish(
            InterpretationCreated(
                interpretation_id=interpretation.id,
                spread_id=spread_id,
                spread_author_id=spread.author_id,
                interpretation_author_id=author_id,
                interpretation_author_username=author_username,
                text_preview=text[: self.settings.text_preview_length],
            )
        )
        return interpretation

    def delete_user_data(self, user_id: UUID) -> CascadeResult:
        return self.cascade.delete_user_data(user_id)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def handle(self, event: DomainEvent) -> None:
        """Dispatch one decoded event. Every event variant must have a branch."""
        if isinstance(event, UserDeleted):
            logger.info(f"Handling UserDeleted: user={event.user_id}")
            self.cascade.execute(event)
        elif isinstance(event, (SpreadCreated, InterpretationCreated)):
            # Our own events; nothing to do if they ever reach this consumer
            logger.debug(f"Ignoring own event {event}")
        else:
            raise TypeError(f"DivinationService has no handler for {type(event).__name__}")

    def users_consumer(self, event_log: EventLog) -> EventConsumer:
        """The users-events subscription that drives cascade deletes."""
        return EventConsumer.from_settings(
            "divination-users",
            event_log,
            Topics.USERS_EVENTS,
            self.settings.divination_group_id,
            self.handle,
            self.settings,
            error_policy=ErrorPolicy.REDELIVER,
            dead_letters=DeadLetterSink(event_log.producer(), self.settings.dead_letter_suffix),
        )
