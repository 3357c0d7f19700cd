"""
In-memory storage for each service's own aggregates.

In a real deployment each service would have its own relational database.
Here every service gets a small store built from thread-safe repositories
that expose the operations the pipeline relies on:
save, find_by_id, find_by_owner_id, delete_by_id and delete_by_owner_id.

Design decisions:
- One lock per repository; handlers run in worker threads while the
  request path writes from others
- Foreign-key cascades are declared between repositories and executed by
  delete operations, like ON DELETE CASCADE in the schema
- Deleting rows that are already gone is a no-op, which is what makes
  redelivered delete events safe
"""

import threading
from typing import Callable, Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel

from shared.models import Interpretation, Notification, Spread, SpreadCard, User

T = TypeVar("T", bound=BaseModel)


class InMemoryRepository(Generic[T]):
    """
    Thread-safe repository keyed by the entity's ``id``.

    Args:
        owner_field: Attribute that identifies the owning user (``author_id``,
            ``user_id``...). Used by the *_by_owner_id operations.
    """

    def __init__(self, owner_field: Optional[str] = None):
        self.owner_field = owner_field
        self._rows: dict[UUID, T] = {}
        self._lock = threading.RLock()
        # (child repository, foreign key attribute on the child)
        self._cascades: list[tuple["InMemoryRepository", str]] = []

    def cascade_to(self, child: "InMemoryRepository", foreign_key: str) -> None:
        """Delete ``child`` rows whose ``foreign_key`` points at a deleted row."""
        self._cascades.append((child, foreign_key))

    def save(self, entity: T) -> T:
        with self._lock:
            self._rows[entity.id] = entity
        return entity

    def find_by_id(self, entity_id: UUID) -> Optional[T]:
        with self._lock:
            return self._rows.get(entity_id)

    def find_all(self) -> list[T]:
        with self._lock:
            return list(self._rows.values())

    def find_by(self, predicate: Callable[[T], bool]) -> list[T]:
        with self._lock:
            return [row for row in self._rows.values() if predicate(row)]

    def find_by_field(self, field_name: str, value) -> list[T]:
        return self.find_by(lambda row: getattr(row, field_name) == value)

    def find_by_owner_id(self, owner_id: UUID) -> list[T]:
        return self.find_by_field(self._require_owner_field(), owner_id)

    def count(self) -> int:
        with self._lock:
            return len(self._rows)

    def delete_by_id(self, entity_id: UUID) -> bool:
        """Delete one row (and its cascades). Returns False if it was absent."""
        with self._lock:
            removed = self._rows.pop(entity_id, None)
        if removed is None:
            return False
        self._run_cascades([entity_id])
        return True

    def delete_by_field(self, field_name: str, value) -> int:
        with self._lock:
            doomed = [row_id for row_id, row in self._rows.items()
                      if getattr(row, field_name) == value]
            for row_id in doomed:
                del self._rows[row_id]
        self._run_cascades(doomed)
        return len(doomed)

    def delete_by_owner_id(self, owner_id: UUID) -> int:
        """Delete every row owned by ``owner_id``. Returns how many were removed."""
        return self.delete_by_field(self._require_owner_field(), owner_id)

    def _run_cascades(self, parent_ids: list[UUID]) -> None:
        for parent_id in parent_ids:
            for child, foreign_key in self._cascades:
                child.delete_by_field(foreign_key, parent_id)

    def _require_owner_field(self) -> str:
        if not self.owner_field:
            raise TypeError(f"{type(self).__name__} has no owner field configured")
        return self.owner_field


# =============================================================================
# Per-service stores
# =============================================================================

class UserStore:
    """Storage owned by the user service."""

    def __init__(self):
        self.users: InMemoryRepository[User] = InMemoryRepository(owner_field="id")

    def find_by_username(self, username: str) -> Optional[User]:
        matches = self.users.find_by_field("username", username)
        return matches[0] if matches else None


class DivinationStore:
    """
    Storage owned by the divination service.

    Schema cascades:
        spreads -> spread_cards (spread_id)
        spreads -> interpretations (spread_id)
    """

    def __init__(self):
        self.spreads: InMemoryRepository[Spread] = InMemoryRepository(owner_field="author_id")
        self.spread_cards: InMemoryRepository[SpreadCard] = InMemoryRepository()
        self.interpretations: InMemoryRepository[Interpretation] = InMemoryRepository(
            owner_field="author_id"
        )
        self.spreads.cascade_to(self.spread_cards, "spread_id")
        self.spreads.cascade_to(self.interpretations, "spread_id")

    def cards_for_spread(self, spread_id: UUID) -> list[SpreadCard]:
        cards = self.spread_cards.find_by_field("spread_id", spread_id)
        return sorted(cards, key=lambda card: card.position)

    def interpretations_for_spread(self, spread_id: UUID) -> list[Interpretation]:
        return self.interpretations.find_by_field("spread_id", spread_id)


class NotificationStore:
    """
    Storage owned by the notification service.

    Notifications are unique per interpretation, the equivalent of a UNIQUE
    constraint on ``interpretation_id``. Redelivered events therefore cannot
    produce a second row.
    """

    def __init__(self):
        self.notifications: InMemoryRepository[Notification] = InMemoryRepository(
            owner_field="user_id"
        )
        self._unique_lock = threading.Lock()

    def insert_unique(self, notification: Notification) -> bool:
        """
        Save ``notification`` unless one already exists for its interpretation.

        Returns:
            True if the row was inserted, False if it was a duplicate.
        """
        with self._unique_lock:
            if notification.interpretation_id is not None and self.find_by_interpretation_id(
                notification.interpretation_id
            ):
                return False
            self.notifications.save(notification)
            return True

    def find_by_interpretation_id(self, interpretation_id: UUID) -> Optional[Notification]:
        matches = self.notifications.find_by_field("interpretation_id", interpretation_id)
        return matches[0] if matches else None

    def list_for_user(self, user_id: UUID, is_read: Optional[bool] = None) -> list[Notification]:
        """Newest first, optionally filtered by read state."""
        rows = self.notifications.find_by_owner_id(user_id)
        if is_read is not None:
            rows = [row for row in rows if row.is_read == is_read]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    def unread_count(self, user_id: UUID) -> int:
        return len(self.list_for_user(user_id, is_read=False))
