"""
Push channels the live broadcaster writes notifications to.

A push channel is one open connection to one client (in production a
websocket, see api/websocket.py). The broadcaster only needs three things
from it: a stable id, a way to write a text frame, and a way to close it.

Design decisions:
- Writes are synchronous from the caller's point of view; they raise
  ChannelWriteError when the connection is gone or the write times out
- RecordingChannel keeps every payload it was given, for tests and the demo
- Channel failures can be simulated for testing
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from shared.errors import ChannelWriteError
from shared.models import utc_now

logger = logging.getLogger("channels")


@runtime_checkable
class PushChannel(Protocol):
    """An open outbound connection to a single client."""

    @property
    def channel_id(self) -> str: ...

    def send_text(self, payload: str) -> None: ...

    def close(self) -> None: ...


@dataclass
class SentFrame:
    """A text frame written to a RecordingChannel."""
    payload: str
    timestamp: datetime = field(default_factory=utc_now)

    def json(self) -> Any:
        return json.loads(self.payload)


class RecordingChannel:
    """
    In-process push channel.

    Stores every frame written to it and can be told to fail, which lets tests
    check that the broadcaster drops broken channels without raising.
    """

    def __init__(self, channel_id: str = "", fail_writes: bool = False):
        self._channel_id = channel_id or f"rec-{uuid4().hex[:8]}"
        self.fail_writes = fail_writes
        self.closed = False
        self.sent_frames: list[SentFrame] = []
        self._lock = threading.Lock()

    @property
    def channel_id(self) -> str:
        return self._channel_id

    def send_text(self, payload: str) -> None:
        if self.closed:
            raise ChannelWriteError("channel is closed", channel_id=self._channel_id)
        if self.fail_writes:
            logger.error(f"[PUSH FAILED] channel={self._channel_id}")
            raise ChannelWriteError("simulated write failure", channel_id=self._channel_id)
        with self._lock:
            self.sent_frames.append(SentFrame(payload=payload))
        logger.debug(f"[PUSH] channel={self._channel_id} bytes={len(payload)}")

    def close(self) -> None:
        self.closed = True

    def get_sent_count(self) -> int:
        with self._lock:
            return len(self.sent_frames)

    def last_json(self) -> Any:
        """Decoded payload of the most recent frame, or None."""
        with self._lock:
            return self.sent_frames[-1].json() if self.sent_frames else None

    def __repr__(self) -> str:
        return f"RecordingChannel({self._channel_id}, sent={len(self.sent_frames)})"
