"""
Origin services of the platform.

Each service owns its data and publishes events when its aggregates change:
- Divination: spreads and interpretations (also consumes user deletions)
- Users: user accounts

They do NOT know about the notification service - they just publish events.
"""

from event_driven.services.divination import DivinationService, SpreadNotFoundError
from event_driven.services.users import UserService

__all__ = [
    "DivinationService",
    "SpreadNotFoundError",
    "UserService",
]
