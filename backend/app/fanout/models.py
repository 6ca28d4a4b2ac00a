"""Data models for the fan-out proxy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class LinkState(str, Enum):
    """Lifecycle of the single upstream connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    GIVEN_UP = "given_up"  # Terminal: reconnect attempts exhausted


class SubscriberState(str, Enum):
    """Connection state of one downstream subscriber."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class PriceEvent:
    """A single upstream price tick, routed by symbol.

    ``raw`` is the exact text received from the provider. Subscribers get that
    text, not a re-serialization, so fields we don't model pass through intact.
    """

    symbol: str
    price: Any
    timestamp: Any
    raw: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any], raw: str) -> PriceEvent:
        """Build from a decoded ``{"event": "price", ...}`` message.

        Raises ValueError if the payload has no usable symbol.
        """
        symbol = payload.get("symbol")
        if not isinstance(symbol, str) or not symbol:
            raise ValueError(f"price event without a symbol: {payload!r}")
        return cls(
            symbol=symbol,
            price=payload.get("price"),
            timestamp=payload.get("timestamp"),
            raw=raw,
        )
