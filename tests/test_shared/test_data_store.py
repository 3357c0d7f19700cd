"""
Tests for the per-service stores.

These tests verify the repository operations the pipeline relies on, the
storage-level cascades of the divination store and the uniqueness of
notifications per interpretation.
"""

import threading
from datetime import timedelta
from uuid import UUID, uuid4

import pytest

from shared.data_store import DivinationStore, InMemoryRepository, NotificationStore, UserStore
from shared.models import Interpretation, Notification, NotificationType, Spread, SpreadCard, User


def _notification(user_id: UUID, interpretation_id=None, is_read: bool = False) -> Notification:
    return Notification(
        user_id=user_id,
        type=NotificationType.NEW_INTERPRETATION,
        title="New interpretation on your spread",
        message='bob added an interpretation: "..."',
        interpretation_id=interpretation_id,
        is_read=is_read,
    )


class TestInMemoryRepository:
    """Tests for the generic repository."""

    @pytest.fixture
    def repo(self) -> InMemoryRepository[Spread]:
        return InMemoryRepository(owner_field="author_id")

    def test_save_and_find_by_id(self, repo, alice_id: UUID):
        """Test a saved row can be found by its id."""
        spread = repo.save(Spread(author_id=alice_id, layout_type_name="Single Card"))

        assert repo.find_by_id(spread.id) == spread
        assert repo.find_by_id(uuid4()) is None

    def test_find_by_owner_id(self, repo, alice_id: UUID, bob_id: UUID):
        """Test filtering rows by their owner."""
        repo.save(Spread(author_id=alice_id, layout_type_name="Single Card"))
        repo.save(Spread(author_id=alice_id, layout_type_name="Celtic Cross"))
        repo.save(Spread(author_id=bob_id, layout_type_name="Single Card"))

        assert len(repo.find_by_owner_id(alice_id)) == 2
        assert len(repo.find_by_owner_id(bob_id)) == 1

    def test_delete_by_owner_id_returns_count(self, repo, alice_id: UUID, bob_id: UUID):
        """Test deleting by owner removes only that owner's rows."""
        repo.save(Spread(author_id=alice_id, layout_type_name="Single Card"))
        repo.save(Spread(author_id=alice_id, layout_type_name="Celtic Cross"))
        repo.save(Spread(author_id=bob_id, layout_type_name="Single Card"))

        assert repo.delete_by_owner_id(alice_id) == 2
        assert repo.count() == 1
        assert repo.delete_by_owner_id(alice_id) == 0

    def test_delete_by_id_missing_row(self, repo):
        """Test deleting a missing row is a no-op."""
        assert repo.delete_by_id(uuid4()) is False

    def test_owner_operations_require_owner_field(self):
        """Test *_by_owner_id on a repository without an owner field."""
        repo: InMemoryRepository[SpreadCard] = InMemoryRepository()

        with pytest.raises(TypeError):
            repo.find_by_owner_id(uuid4())


class TestUserStore:
    """Tests for the user service store."""

    def test_find_by_username(self):
        store = UserStore()
        alice = store.users.save(User(username="alice"))

        assert store.find_by_username("alice") == alice
        assert store.find_by_username("nobody") is None


class TestDivinationStoreCascades:
    """Tests for the spread -> cards / interpretations cascades."""

    @pytest.fixture
    def store(self) -> DivinationStore:
        return DivinationStore()

    def test_deleting_spread_removes_cards_and_interpretations(self, store, alice_id: UUID, bob_id: UUID):
        """Test that a spread takes its cards and every interpretation on it along."""
        spread = store.spreads.save(Spread(author_id=alice_id, layout_type_name="Two Cards", cards_count=2))
        store.spread_cards.save(SpreadCard(spread_id=spread.id, card_name="The Moon", position=0))
        store.spread_cards.save(SpreadCard(spread_id=spread.id, card_name="The Sun", position=1))
        store.interpretations.save(Interpretation(spread_id=spread.id, author_id=bob_id, text="Hidden fears"))

        assert store.spreads.delete_by_id(spread.id) is True

        assert store.spread_cards.count() == 0
        assert store.interpretations.count() == 0

    def test_cascade_leaves_other_spreads_alone(self, store, alice_id: UUID, bob_id: UUID):
        """Test cascades only follow the deleted spread's id."""
        doomed = store.spreads.save(Spread(author_id=alice_id, layout_type_name="Single Card"))
        kept = store.spreads.save(Spread(author_id=bob_id, layout_type_name="Single Card"))
        store.interpretations.save(Interpretation(spread_id=doomed.id, author_id=bob_id, text="Fears"))
        store.interpretations.save(Interpretation(spread_id=kept.id, author_id=alice_id, text="Joy"))

        store.spreads.delete_by_owner_id(alice_id)

        assert store.spreads.find_by_id(kept.id) is not None
        assert len(store.interpretations_for_spread(kept.id)) == 1

    def test_cards_for_spread_ordered_by_position(self, store, alice_id: UUID):
        spread = store.spreads.save(Spread(author_id=alice_id, layout_type_name="Three Cards", cards_count=3))
        for position, name in [(2, "The Star"), (0, "The Fool"), (1, "The Tower")]:
            store.spread_cards.save(SpreadCard(spread_id=spread.id, card_name=name, position=position))

        assert [c.card_name for c in store.cards_for_spread(spread.id)] == ["The Fool", "The Tower", "The Star"]


class TestNotificationStore:
    """Tests for notification storage."""

    @pytest.fixture
    def store(self) -> NotificationStore:
        return NotificationStore()

    def test_insert_unique_rejects_duplicate_interpretation(self, store, alice_id: UUID):
        """Test at most one notification exists per interpretation."""
        interpretation_id = uuid4()

        assert store.insert_unique(_notification(alice_id, interpretation_id)) is True
        assert store.insert_unique(_notification(alice_id, interpretation_id)) is False
        assert store.notifications.count() == 1

    def test_insert_unique_is_thread_safe(self, store, alice_id: UUID):
        """Test concurrent inserts for the same interpretation keep one row."""
        interpretation_id = uuid4()
        results = []

        def insert():
            results.append(store.insert_unique(_notification(alice_id, interpretation_id)))

        threads = [threading.Thread(target=insert) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert store.notifications.count() == 1

    def test_list_for_user_newest_first_and_filtered(self, store, alice_id: UUID, bob_id: UUID):
        """Test listing a user's notifications with the read filter."""
        first = _notification(alice_id, uuid4())
        second = _notification(alice_id, uuid4(), is_read=True)
        second = second.model_copy(update={"created_at": first.created_at + timedelta(seconds=1)})
        store.insert_unique(first)
        store.insert_unique(second)
        store.insert_unique(_notification(bob_id, uuid4()))

        assert [n.id for n in store.list_for_user(alice_id)] == [second.id, first.id]
        assert [n.id for n in store.list_for_user(alice_id, is_read=False)] == [first.id]
        assert store.unread_count(alice_id) == 1
