"""Subscription router: the single mutation point for symbol interest."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .interface import MarketDataLink
from .models import PriceEvent
from .registry import SubscriptionRegistry

if TYPE_CHECKING:
    from .subscriber import Subscriber

logger = logging.getLogger(__name__)


class SubscriptionRouter:
    """Bridges SubscriptionRegistry decisions to upstream link commands.

    Every registry mutation and the link command it triggers run under one
    asyncio.Lock, so a subscribe/unsubscribe pair for the same symbol can never
    interleave and reorder the net upstream effect. Event fan-out never awaits:
    it reads the registry and hands raw payloads to subscriber queues.
    """

    def __init__(self, link: MarketDataLink, registry: SubscriptionRegistry | None = None) -> None:
        self._link = link
        self._registry = registry if registry is not None else SubscriptionRegistry()
        self._lock = asyncio.Lock()
        link.on_event(self.on_upstream_event)
        link.on_connected(self.replay_subscriptions)

    async def subscribe(self, symbol: str, subscriber: Subscriber) -> None:
        async with self._lock:
            if self._registry.add_interest(symbol, subscriber):
                logger.info("First subscriber for %s", symbol)
                await self._link.send_subscribe(symbol)

    async def unsubscribe(self, symbol: str, subscriber: Subscriber) -> None:
        async with self._lock:
            if self._registry.remove_interest(symbol, subscriber):
                logger.info("Last subscriber left %s", symbol)
                await self._link.send_unsubscribe(symbol)

    async def on_subscriber_disconnect(self, subscriber: Subscriber) -> None:
        """Retract all interests of a departed subscriber."""
        async with self._lock:
            emptied = self._registry.remove_subscriber(subscriber)
            for symbol in sorted(emptied):
                await self._link.send_unsubscribe(symbol)
        if emptied:
            logger.info("Released %d symbols on disconnect: %s", len(emptied), ",".join(sorted(emptied)))

    async def replay_subscriptions(self) -> None:
        """Re-subscribe every desired symbol after the link (re)connects."""
        async with self._lock:
            symbols = sorted(self._registry.symbols())
            if symbols:
                await self._link.send_subscribe(*symbols)
                logger.info("Re-subscribed to: %s", ",".join(symbols))

    def on_upstream_event(self, event: PriceEvent) -> None:
        """Fan out one price event to its current subscribers. Best-effort."""
        for subscriber in self._registry.interested_in(event.symbol):
            # False means closed or backed up; the gateway handles its disconnect
            subscriber.deliver(event.raw)

    @property
    def symbols(self) -> set[str]:
        """Symbols currently wanted by at least one subscriber."""
        return self._registry.symbols()

    def symbols_for(self, subscriber: Subscriber) -> set[str]:
        return self._registry.symbols_for(subscriber)
