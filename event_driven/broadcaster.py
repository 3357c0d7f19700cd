"""
Live broadcaster: best-effort push of notifications to connected users.

The broadcaster keeps, for each user, the set of push channels currently
open (one per browser tab or device). Channels register on connect and
unregister on disconnect or on the first failed write.

Concurrency:
- Connection lifecycle runs on the web server's loop; broadcasts come from
  consumer handler threads. All of them touch the registry concurrently.
- The registry is guarded by lock striping: a fixed array of locks, one
  chosen per user id. Unrelated users almost never share a lock, and no
  single mutex serializes everybody.
- Writes happen outside the lock, on a snapshot of the user's channels, so
  a slow socket never blocks registration for other users.

Delivery is best-effort: no channel means nothing to do, and write failures
are logged and swallowed. The notification row is always fetchable through
the pull API regardless.
"""

import json
import logging
import threading
from typing import Any, Union
from uuid import UUID

from pydantic import BaseModel

from shared.channels import PushChannel

logger = logging.getLogger("live_broadcaster")


class LiveBroadcaster:
    """
    Registry of open push channels keyed by user id.

    Example:
        broadcaster = LiveBroadcaster()
        broadcaster.register(user_id, channel)       # on websocket connect
        broadcaster.broadcast(user_id, dto)          # from any thread
        broadcaster.unregister(user_id, channel)     # on disconnect
        broadcaster.close()                          # at shutdown
    """

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._channels: dict[UUID, set[PushChannel]] = {}

    def _lock_for(self, user_id: UUID) -> threading.Lock:
        return self._locks[hash(user_id) % len(self._locks)]

    def register(self, user_id: UUID, channel: PushChannel) -> None:
        with self._lock_for(user_id):
            self._channels.setdefault(user_id, set()).add(channel)
        logger.info(f"Registered channel {channel.channel_id} for user {user_id}")

    def unregister(self, user_id: UUID, channel: PushChannel) -> bool:
        """Remove ``channel``. Returns False if it was not registered."""
        with self._lock_for(user_id):
            channels = self._channels.get(user_id)
            if not channels or channel not in channels:
                return False
            channels.discard(channel)
            if not channels:
                del self._channels[user_id]
        logger.info(f"Unregistered channel {channel.channel_id} for user {user_id}")
        return True

    def channels_for(self, user_id: UUID) -> list[PushChannel]:
        with self._lock_for(user_id):
            return list(self._channels.get(user_id, ()))

    def broadcast(self, user_id: UUID, message: Union[BaseModel, dict[str, Any]]) -> int:
        """
        Push ``message`` as JSON to every channel of ``user_id``.

        Returns:
            Number of channels the message was written to. Zero when the user
            has no open channel; that is not an error.
        """
        channels = self.channels_for(user_id)
        if not channels:
            logger.debug(f"No live channel for user {user_id} (active users: {self.active_user_count()})")
            return 0

        payload = _to_json(message)
        delivered = 0
        for channel in channels:
            try:
                channel.send_text(payload)
                delivered += 1
            except Exception as exc:
                logger.warning(f"Push to channel {channel.channel_id} of user {user_id} failed, dropping it: {exc}")
                self.unregister(user_id, channel)
        logger.info(f"Broadcast to {delivered}/{len(channels)} channel(s) of user {user_id}")
        return delivered

    def active_user_count(self) -> int:
        return len(self._channels)

    def active_channel_count(self) -> int:
        return sum(len(channels) for channels in list(self._channels.values()))

    def close(self) -> None:
        """Close and forget every channel. Called when the service shuts down."""
        closed = 0
        for user_id in list(self._channels):
            with self._lock_for(user_id):
                channels = self._channels.pop(user_id, set())
            for channel in channels:
                try:
                    channel.close()
                except Exception as exc:
                    logger.warning(f"Error closing channel {channel.channel_id}: {exc}")
                closed += 1
        logger.info(f"Broadcaster drained, {closed} channel(s) closed")


def _to_json(message: Union[BaseModel, dict[str, Any]]) -> str:
    if isinstance(message, BaseModel):
        return message.model_dump_json(by_alias=True)
    return json.dumps(message, default=str)
