"""Proxy configuration from environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlencode

DEFAULT_WS_URL = "wss://ws.twelvedata.com/v1/quotes/price"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True, slots=True)
class ProxyConfig:
    """Immutable settings handed to the core at construction time."""

    api_key: str
    base_url: str = DEFAULT_WS_URL
    host: str = "0.0.0.0"
    port: int = 8080
    max_reconnect_attempts: int = 10
    reconnect_interval: float = 5.0  # seconds
    heartbeat_interval: float = 10.0  # seconds
    subscriber_queue_size: int = 256
    log_level: str = "INFO"

    @property
    def ws_url(self) -> str:
        """Provider endpoint with the API key attached."""
        sep = "&" if "?" in self.base_url else "?"
        return f"{self.base_url}{sep}{urlencode({'apikey': self.api_key})}"


def _int(env: Mapping[str, str], name: str, default: int, minimum: int, maximum: int | None = None) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
        raise ConfigError(f"{name} must be {bounds}, got {value}")
    return value


def load_config(environ: Mapping[str, str] | None = None) -> ProxyConfig:
    """Build a ProxyConfig from the environment.

    - TWELVEDATA_API_KEY is required (empty or whitespace counts as missing)
    - Intervals are given in milliseconds, as MAX_RECONNECT_ATTEMPTS,
      RECONNECT_INTERVAL_MS and HEARTBEAT_INTERVAL_MS

    Raises ConfigError on the first invalid value.
    """
    env = os.environ if environ is None else environ

    api_key = env.get("TWELVEDATA_API_KEY", "").strip()
    if not api_key:
        raise ConfigError("TWELVEDATA_API_KEY is not set")

    log_level = env.get("LOG_LEVEL", "").strip().upper() or "INFO"
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {log_level!r}")

    return ProxyConfig(
        api_key=api_key,
        base_url=env.get("TWELVEDATA_WS_URL", "").strip() or DEFAULT_WS_URL,
        host=env.get("WS_HOST", "").strip() or "0.0.0.0",
        port=_int(env, "WS_PORT", 8080, 1, 65535),
        max_reconnect_attempts=_int(env, "MAX_RECONNECT_ATTEMPTS", 10, 0),
        reconnect_interval=_int(env, "RECONNECT_INTERVAL_MS", 5000, 1) / 1000,
        heartbeat_interval=_int(env, "HEARTBEAT_INTERVAL_MS", 10000, 1) / 1000,
        subscriber_queue_size=_int(env, "SUBSCRIBER_QUEUE_SIZE", 256, 1),
        log_level=log_level,
    )
