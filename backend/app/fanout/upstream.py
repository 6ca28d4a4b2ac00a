"""WebSocket link to the upstream market data provider (Twelve Data)."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from .interface import ConnectedHandler, EventHandler, MarketDataLink
from .models import LinkState, PriceEvent
from .protocol import Action, encode_command

logger = logging.getLogger(__name__)

_APIKEY_RE = re.compile(r"(apikey=)[^&]+", re.IGNORECASE)


def redact_url(url: str) -> str:
    """Hide the API key in a provider URL before it reaches the logs."""
    return _APIKEY_RE.sub(r"\1***", url)


class UpstreamLink(MarketDataLink):
    """MarketDataLink backed by a single ``websockets`` client connection.

    State machine:
        disconnected  --connect()-->            connecting
        connecting    --handshake ok-->         connected   (attempts reset, heartbeat on,
                                                             on-connected handlers awaited)
        connecting/connected --unclean close--> reconnect_scheduled  (attempts < max)
                                              \\-> given_up             (attempts == max)
        reconnect_scheduled  --backoff fires--> connecting
        connecting/connected --clean close or close()--> disconnected

    Backoff is a fixed interval. The attempt counter only resets on a
    successful handshake, never on message receipt.
    """

    def __init__(
        self,
        url: str,
        max_reconnect_attempts: int = 10,
        reconnect_interval: float = 5.0,
        heartbeat_interval: float = 10.0,
        open_timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._max_attempts = max_reconnect_attempts
        self._reconnect_interval = reconnect_interval
        self._heartbeat_interval = heartbeat_interval
        self._open_timeout = open_timeout

        self._state = LinkState.DISCONNECTED
        self._ws: Any = None
        self._reconnect_attempts = 0
        self._last_heartbeat: float | None = None
        self._closed = False  # close() was called; the link is inert from now on

        self._conn_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

        self._event_handlers: list[EventHandler] = []
        self._connected_handlers: list[ConnectedHandler] = []

    # --- Public API ---

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def last_heartbeat(self) -> float | None:
        return self._last_heartbeat

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def on_event(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def on_connected(self, handler: ConnectedHandler) -> None:
        self._connected_handlers.append(handler)

    def connect(self) -> None:
        if self._closed:
            logger.warning("Upstream link is closed; ignoring connect()")
            return
        if self._state in (LinkState.CONNECTING, LinkState.CONNECTED):
            logger.debug("Upstream already %s", self._state.value)
            return
        if self._state is LinkState.GIVEN_UP:
            logger.error("Upstream link gave up after %d attempts; restart required", self._max_attempts)
            return

        # An explicit connect() pre-empts a pending backoff timer
        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

        self._state = LinkState.CONNECTING
        logger.info("Connecting to upstream: %s", redact_url(self._url))
        self._conn_task = asyncio.create_task(self._run_connection(), name="upstream-link")

    async def send_subscribe(self, *symbols: str) -> bool:
        if not symbols:
            return False
        sent = await self._send(encode_command(Action.SUBSCRIBE.value, symbols))
        if sent:
            logger.info("Sent SUBSCRIBE upstream for: %s", ",".join(symbols))
        return sent

    async def send_unsubscribe(self, *symbols: str) -> bool:
        if not symbols:
            return False
        sent = await self._send(encode_command(Action.UNSUBSCRIBE.value, symbols))
        if sent:
            logger.info("Sent UNSUBSCRIBE upstream for: %s", ",".join(symbols))
        return sent

    async def close(self) -> None:
        self._closed = True
        await _cancel_task(self._heartbeat_task)
        self._heartbeat_task = None
        await _cancel_task(self._reconnect_task)
        self._reconnect_task = None

        task = self._conn_task
        if self._state is LinkState.CONNECTED and self._ws is not None:
            # Reader loop sees the clean close and settles the state
            await self._ws.close()
        elif task is not None and not task.done():
            task.cancel()
        if task is not None and task is not asyncio.current_task():
            await _cancel_task(task, cancel=False)
        self._conn_task = None
        self._ws = None

        if self._state is not LinkState.GIVEN_UP:
            self._state = LinkState.DISCONNECTED
        logger.info("Upstream link closed")

    # --- Internals ---

    async def _open_connection(self) -> Any:
        return await websockets.connect(self._url, open_timeout=self._open_timeout)

    async def _run_connection(self) -> None:
        """One connection lifetime: handshake, read until close, then decide what's next."""
        try:
            ws = await self._open_connection()
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("Upstream connect failed: %s", e)
            self._handle_close(clean=False)
            return

        if self._closed:
            await ws.close()
            return

        self._ws = ws
        self._state = LinkState.CONNECTED
        self._reconnect_attempts = 0
        logger.info("Upstream connection opened")
        self._start_heartbeat()
        await self._notify_connected()

        clean = True
        try:
            async for raw in ws:
                self._handle_message(raw)
        except ConnectionClosedError as e:
            logger.warning("Upstream connection lost: %s", e)
            clean = False
        except OSError as e:
            logger.warning("Upstream I/O error: %s", e)
            clean = False
        except Exception:
            logger.exception("Upstream reader failed")
            clean = False
            await ws.close()
        finally:
            self._ws = None

        self._handle_close(clean=clean)

    def _handle_close(self, clean: bool) -> None:
        self._stop_heartbeat()

        if self._closed or clean:
            self._state = LinkState.DISCONNECTED
            logger.info("Upstream connection closed cleanly; not reconnecting")
            return

        if self._reconnect_attempts >= self._max_attempts:
            self._state = LinkState.GIVEN_UP
            logger.error("Max reconnection attempts (%d) reached; giving up", self._max_attempts)
            return

        self._reconnect_attempts += 1
        self._state = LinkState.RECONNECT_SCHEDULED
        logger.info(
            "Reconnect attempt %d/%d in %.1fs",
            self._reconnect_attempts,
            self._max_attempts,
            self._reconnect_interval,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_backoff(), name="upstream-reconnect"
        )

    async def _reconnect_after_backoff(self) -> None:
        await asyncio.sleep(self._reconnect_interval)
        self._reconnect_task = None
        self.connect()

    async def _notify_connected(self) -> None:
        for handler in list(self._connected_handlers):
            try:
                await handler()
            except Exception:
                logger.exception("Upstream on-connected handler failed")

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (ValueError, RecursionError):
            logger.warning("Ignoring undecodable upstream message: %.200r", raw)
            return
        if not isinstance(data, dict):
            logger.warning("Ignoring unexpected upstream message: %.200s", raw)
            return

        event = data.get("event")
        if event == "price":
            try:
                price_event = PriceEvent.from_payload(data, raw)
            except ValueError as e:
                logger.warning("Skipping malformed price event: %s", e)
                return
            self._dispatch(price_event)
        elif event == "subscribe-status":
            logger.info("Subscribe status: %s", data)
        else:
            logger.debug("Other upstream message: %s", data)

    def _dispatch(self, event: PriceEvent) -> None:
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Price event handler failed for %s", event.symbol)

    async def _send(self, message: str) -> bool:
        ws = self._ws
        if self._state is not LinkState.CONNECTED or ws is None:
            return False
        try:
            await ws.send(message)
        except ConnectionClosed:
            # The reader loop will observe the close and drive reconnection
            logger.debug("Upstream send skipped, connection closing")
            return False
        return True

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="upstream-heartbeat")

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if await self._send(encode_command("heartbeat")):
                self._last_heartbeat = time.time()
                logger.debug("Heartbeat sent")


async def _cancel_task(task: asyncio.Task | None, cancel: bool = True) -> None:
    """Cancel (optionally) and await a task, absorbing its cancellation."""
    if task is None or task is asyncio.current_task():
        return
    if cancel and not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
