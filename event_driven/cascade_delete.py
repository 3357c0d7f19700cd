"""
Cascade delete of a deleted user's divination data.

There is no foreign key between the user service and the divination
service, so the divination service removes a user's data itself when it
sees UserDeleted.

Order matters: the user's interpretations go first (including those on
other users' spreads, which no spread cascade would reach), then the user's
spreads, whose deletion cascades at the storage layer to their card
placements and to other users' interpretations on them.

Deleting absent rows is a no-op, so running the executor twice for the same
event, or for a user with no data, is safe.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from event_driven.events import UserDeleted
from shared.data_store import DivinationStore

logger = logging.getLogger("cascade_delete")


@dataclass(frozen=True)
class CascadeResult:
    user_id: UUID
    interpretations_deleted: int
    spreads_deleted: int


class CascadeDeleteExecutor:
    """Removes everything a deleted user authored in the divination store."""

    def __init__(self, store: DivinationStore):
        self.store = store

    def execute(self, event: UserDeleted) -> CascadeResult:
        return self.delete_user_data(event.user_id)

    def delete_user_data(self, user_id: UUID) -> CascadeResult:
        interpretations = self.store.interpretations.delete_by_owner_id(user_id)
        spreads = self.store.spreads.delete_by_owner_id(user_id)
        result = CascadeResult(user_id=user_id, interpretations_deleted=interpretations, spreads_deleted=spreads)
        if interpretations or spreads:
            logger.info(
                f"Deleted data of user {user_id}: {interpretations} interpretation(s), {spreads} spread(s)"
            )
        else:
            logger.info(f"No data left for user {user_id}, nothing to delete")
        return result
