"""Wire formats: downstream requests and upstream commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Action(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


@dataclass(frozen=True, slots=True)
class SubscriptionRequest:
    """A decoded downstream request: one action over one or more symbols."""

    action: Action
    symbols: tuple[str, ...]


def split_symbols(value: str) -> list[str]:
    """Split a comma-separated symbol list, dropping blanks. Case is preserved."""
    return [s.strip() for s in value.split(",") if s.strip()]


def parse_request(raw: str | bytes) -> SubscriptionRequest | None:
    """Decode a downstream frame.

    Expected shape:
        {"action": "subscribe" | "unsubscribe", "params": {"symbols": "AAPL,MSFT"}}

    Returns None for anything else (bad JSON, unknown action, missing or empty
    symbol list). Callers log and ignore those; the connection stays open.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None

    try:
        action = Action(data.get("action"))
    except ValueError:
        return None

    params = data.get("params")
    if not isinstance(params, dict):
        return None
    symbols = params.get("symbols")
    if not isinstance(symbols, str):
        return None

    parsed = split_symbols(symbols)
    if not parsed:
        return None
    return SubscriptionRequest(action=action, symbols=tuple(parsed))


def encode_command(action: str, symbols: tuple[str, ...] | list[str] = ()) -> str:
    """Encode an upstream command. Symbols are comma-joined into one message."""
    message: dict[str, Any] = {"action": action}
    if symbols:
        message["params"] = {"symbols": ",".join(symbols)}
    return json.dumps(message)
