"""Abstract interface for the upstream market data link."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from .models import LinkState, PriceEvent

EventHandler = Callable[[PriceEvent], None]
ConnectedHandler = Callable[[], Awaitable[None]]


class MarketDataLink(ABC):
    """Contract for the single connection to the market data provider.

    The router is the only writer: it issues subscribe/unsubscribe commands as
    per-symbol interest appears and disappears. The link never tracks desired
    symbols itself; after every (re)connect it awaits its on-connected
    handlers, and the router replays the registry from there.

    Lifecycle:
        link = UpstreamLink(url, ...)
        router = SubscriptionRouter(link)  # registers on_event / on_connected
        link.connect()
        # ... proxy runs ...
        await link.close()
    """

    @abstractmethod
    def connect(self) -> None:
        """Start connecting in the background.

        No-op while already connecting or connected.
        """

    @abstractmethod
    async def close(self) -> None:
        """Cancel timers, close cleanly, and never reconnect again.

        Safe to call multiple times.
        """

    @abstractmethod
    async def send_subscribe(self, *symbols: str) -> bool:
        """Ask the provider to stream these symbols.

        Returns False without sending when not connected.
        """

    @abstractmethod
    async def send_unsubscribe(self, *symbols: str) -> bool:
        """Ask the provider to stop streaming these symbols.

        Returns False without sending when not connected.
        """

    @abstractmethod
    def on_event(self, handler: EventHandler) -> None:
        """Register a callback for every decoded inbound price event."""

    @abstractmethod
    def on_connected(self, handler: ConnectedHandler) -> None:
        """Register a coroutine function awaited after each successful handshake."""

    @property
    @abstractmethod
    def state(self) -> LinkState:
        """Current connection state."""

    @property
    @abstractmethod
    def last_heartbeat(self) -> float | None:
        """Unix seconds of the last keepalive sent, or None."""

    @property
    @abstractmethod
    def reconnect_attempts(self) -> int:
        """Reconnects attempted since the last successful connect."""
