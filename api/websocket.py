"""Websocket push channel for the live broadcaster."""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from fastapi import WebSocket

from shared.errors import ChannelWriteError

logger = logging.getLogger("websocket_channel")


class WebSocketChannel:
    """
    Adapts a FastAPI websocket to the PushChannel protocol.

    Broadcasts arrive from consumer handler threads, while the socket belongs
    to the server's event loop. A write is therefore scheduled on that loop
    and waited for, up to ``write_timeout`` seconds. Called on the loop
    itself, the write is scheduled without waiting.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop, write_timeout: float = 5.0) -> None:
        self.websocket = websocket
        self.loop = loop
        self.write_timeout = write_timeout
        self.closed = False
        self._channel_id = f"ws-{uuid4().hex[:8]}"
        # Writes scheduled on the loop; the loop only keeps weak references
        self._pending_writes: set[asyncio.Task] = set()

    @property
    def channel_id(self) -> str:
        return self._channel_id

    def send_text(self, payload: str) -> None:
        if self.closed:
            raise ChannelWriteError("websocket is closed", channel_id=self._channel_id)
        if _running_loop() is self.loop:
            task = self.loop.create_task(self._send_or_close(payload))
            self._pending_writes.add(task)
            task.add_done_callback(self._pending_writes.discard)
            return
        future = asyncio.run_coroutine_threadsafe(self.websocket.send_text(payload), self.loop)
        try:
            future.result(timeout=self.write_timeout)
        except Exception as exc:
            future.cancel()
            self.closed = True
            raise ChannelWriteError(f"websocket write failed: {exc!r}", channel_id=self._channel_id) from exc

    async def _send_or_close(self, payload: str) -> None:
        try:
            await self.websocket.send_text(payload)
        except Exception as exc:
            logger.warning(f"Write to {self._channel_id} failed: {exc!r}")
            self.closed = True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            asyncio.run_coroutine_threadsafe(self._close(), self.loop)
        except RuntimeError as exc:
            logger.debug(f"Loop gone while closing {self._channel_id}: {exc}")

    async def _close(self) -> None:
        try:
            await self.websocket.close(code=1001)
        except Exception as exc:
            logger.debug(f"Closing {self._channel_id} failed: {exc!r}")


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
