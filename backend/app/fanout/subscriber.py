"""One downstream connection and its outbound queue."""

from __future__ import annotations

import asyncio
import itertools
import logging

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from .models import SubscriberState

logger = logging.getLogger(__name__)

_ids = itertools.count(1)


class Subscriber:
    """A downstream consumer bound to one live WebSocket.

    Fan-out calls deliver(), which only enqueues; run_writer() drains the
    queue to the socket. A full queue drops the message instead of stalling
    the router, so one slow client can't hold up everyone else.
    """

    def __init__(self, websocket: WebSocket, queue_size: int = 256) -> None:
        self.id = next(_ids)
        self.websocket = websocket
        client = websocket.client
        self.peer = f"{client.host}:{client.port}" if client else "unknown"
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._state = SubscriberState.OPEN
        self._dropped = 0

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def dropped(self) -> int:
        """Messages discarded because the queue was full."""
        return self._dropped

    def deliver(self, payload: str) -> bool:
        """Queue a payload without blocking. Returns False if it was not queued."""
        if self._state is not SubscriberState.OPEN:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._dropped += 1
            if self._dropped == 1 or self._dropped % 100 == 0:
                logger.warning("Subscriber %d is backed up; %d messages dropped", self.id, self._dropped)
            return False
        return True

    async def run_writer(self) -> None:
        """Write queued payloads in order until the socket fails or is closed."""
        while True:
            payload = await self._queue.get()
            try:
                await self.websocket.send_text(payload)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.info("Write to subscriber %d failed, treating as disconnect: %s", self.id, e)
                self.mark_closed()
                return

    def mark_closed(self) -> None:
        self._state = SubscriberState.CLOSED

    async def close(self, code: int = 1000) -> None:
        if self._state is not SubscriberState.OPEN:
            return
        self._state = SubscriberState.CLOSING
        try:
            await self.websocket.close(code=code)
        except (RuntimeError, OSError) as e:
            logger.debug("Subscriber %d already closed: %s", self.id, e)
        self._state = SubscriberState.CLOSED

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, peer={self.peer}, state={self._state.value})"
