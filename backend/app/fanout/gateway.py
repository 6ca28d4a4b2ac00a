"""Downstream WebSocket gateway."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

from .protocol import Action, parse_request
from .router import SubscriptionRouter
from .subscriber import Subscriber

logger = logging.getLogger(__name__)

GOING_AWAY = 1001


class SubscriberGateway:
    """Accepts subscriber connections and turns their requests into router calls.

    Each connection runs a reader and a writer concurrently. Whichever ends
    first (client hung up, or a write failed) ends the connection, and the
    subscriber's interests are released through the router.
    """

    def __init__(self, router: SubscriptionRouter, queue_size: int = 256) -> None:
        self._router = router
        self._queue_size = queue_size
        self._subscribers: set[Subscriber] = set()
        self._closing = False

    @property
    def accepting(self) -> bool:
        return not self._closing

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def subscribers(self) -> list[Subscriber]:
        return sorted(self._subscribers, key=lambda s: s.id)

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one downstream connection until it goes away."""
        if self._closing:
            await websocket.close(code=GOING_AWAY)
            return

        await websocket.accept()
        subscriber = Subscriber(websocket, queue_size=self._queue_size)
        self._subscribers.add(subscriber)
        logger.info("Client connected: %r (%d total)", subscriber, len(self._subscribers))

        reader = asyncio.create_task(self._read_requests(subscriber), name=f"subscriber-{subscriber.id}-reader")
        writer = asyncio.create_task(subscriber.run_writer(), name=f"subscriber-{subscriber.id}-writer")
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, writer):
                task.cancel()
            results = await asyncio.gather(reader, writer, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Subscriber %d task failed", subscriber.id, exc_info=result)
            subscriber.mark_closed()
            self._subscribers.discard(subscriber)
            await self._router.on_subscriber_disconnect(subscriber)
            logger.info("Client disconnected: %r (%d remaining)", subscriber, len(self._subscribers))

    async def handle_message(self, subscriber: Subscriber, raw: str | bytes) -> None:
        """Apply one request. Symbols are handled one at a time; no rollback."""
        request = parse_request(raw)
        if request is None:
            logger.warning("Ignoring unrecognized message from subscriber %d: %.200r", subscriber.id, raw)
            return

        for symbol in request.symbols:
            if request.action is Action.SUBSCRIBE:
                await self._router.subscribe(symbol, subscriber)
            else:
                await self._router.unsubscribe(symbol, subscriber)
        logger.debug("Subscriber %d %s: %s", subscriber.id, request.action.value, ",".join(request.symbols))

    async def close(self) -> None:
        """Stop accepting and close every open subscriber. Idempotent."""
        self._closing = True
        subscribers = list(self._subscribers)
        for subscriber in subscribers:
            await subscriber.close(code=GOING_AWAY)
        if subscribers:
            logger.info("Closed %d subscriber connections", len(subscribers))

    async def _read_requests(self, subscriber: Subscriber) -> None:
        while True:
            try:
                message = await subscriber.websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                return
            if message["type"] == "websocket.disconnect":
                return

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            await self.handle_message(subscriber, raw)


def create_gateway_router(gateway: SubscriberGateway) -> APIRouter:
    """Create the WebSocket router bound to a gateway.

    Served at both /ws and / so clients that connect to the bare host work too.
    """
    router = APIRouter(tags=["streaming"])

    async def subscriber_endpoint(websocket: WebSocket) -> None:
        await gateway.handle(websocket)

    router.add_api_websocket_route("/ws", subscriber_endpoint)
    router.add_api_websocket_route("/", subscriber_endpoint)
    return router
