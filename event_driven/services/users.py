"""
User service simulator.

Manages user rows and publishes UserDeleted once a delete is committed.
It does not know which services keep data about users; they clean up
after themselves when they see the event.
"""

import logging
from typing import Optional
from uuid import UUID

from event_driven.events import UserDeleted
from event_driven.publisher import EventPublisher
from shared.data_store import UserStore
from shared.models import User

logger = logging.getLogger("user_service")


class UserService:

    def __init__(self, store: UserStore, publisher: EventPublisher):
        self.store = store
        self.publisher = publisher

    def create_user(self, username: str) -> User:
        if self.store.find_by_username(username):
            raise ValueError(f"Username already taken: {username}")
        user = self.store.users.save(User(username=username))
        logger.info(f"User {username} created ({user.id})")
        return user

    def get_user(self, user_id: UUID) -> Optional[User]:
        return self.store.users.find_by_id(user_id)

    def delete_user(self, user_id: UUID) -> bool:
        """
        Delete a user and publish UserDeleted.

        Returns:
            True if the user existed. Unknown users publish nothing.
        """
        if not self.store.users.delete_by_id(user_id):
            logger.warning(f"User not found: {user_id}")
            return False
        logger.info(f"User {user_id} deleted")
        self.publisher.publish(UserDeleted(user_id=user_id))
        return True
