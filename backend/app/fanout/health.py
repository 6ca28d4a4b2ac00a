"""Health, status and metrics endpoints."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from .gateway import SubscriberGateway
from .interface import MarketDataLink
from .models import LinkState
from .router import SubscriptionRouter

VERSION = "1.0.0"


def format_uptime(seconds: float) -> str:
    """Render seconds as e.g. '2d 3h 4m 5s', omitting leading zero units."""
    seconds = int(seconds)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m {secs}s"
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def create_health_router(
    link: MarketDataLink,
    router: SubscriptionRouter,
    gateway: SubscriberGateway,
    port: int | None = None,
) -> APIRouter:
    """Create the read-only monitoring router.

    The proxy is healthy while the upstream link is connected or connecting
    and the gateway is still accepting subscribers. A link that gave up, or is
    waiting out a backoff, reports 503.
    """
    api = APIRouter(tags=["health"])
    started_at = time.time()

    def is_healthy() -> bool:
        upstream_ok = link.state in (LinkState.CONNECTED, LinkState.CONNECTING)
        return upstream_ok and gateway.accepting

    def base(healthy: bool) -> dict[str, Any]:
        return {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": format_uptime(time.time() - started_at),
        }

    @api.get("/health")
    async def health() -> JSONResponse:
        healthy = is_healthy()
        body = base(healthy) | {"version": VERSION}
        return JSONResponse(body, status_code=200 if healthy else 503)

    @api.get("/status")
    async def status() -> JSONResponse:
        healthy = is_healthy()
        symbols = sorted(router.symbols)
        body = base(healthy) | {
            "services": {
                "upstream": {
                    "state": link.state.value,
                    "connected": link.state is LinkState.CONNECTED,
                    "connecting": link.state is LinkState.CONNECTING,
                    "subscribedSymbols": symbols,
                    "symbolCount": len(symbols),
                    "reconnectAttempts": link.reconnect_attempts,
                    "lastHeartbeat": _iso(link.last_heartbeat),
                },
                "proxy": {
                    "accepting": gateway.accepting,
                    "port": port,
                    "connectedClients": gateway.subscriber_count,
                    "clientList": [
                        {
                            "id": sub.id,
                            "peer": sub.peer,
                            "state": sub.state.value,
                            "symbols": sorted(router.symbols_for(sub)),
                            "dropped": sub.dropped,
                        }
                        for sub in gateway.subscribers
                    ],
                },
            },
        }
        return JSONResponse(body, status_code=200 if healthy else 503)

    @api.get("/metrics")
    async def metrics() -> dict[str, Any]:
        subscribers = gateway.subscribers
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": int(time.time() - started_at),
            "connected_clients": len(subscribers),
            "subscribed_symbols": len(router.symbols),
            "upstream_connected": link.state is LinkState.CONNECTED,
            "upstream_state": link.state.value,
            "reconnect_attempts": link.reconnect_attempts,
            "dropped_messages": sum(sub.dropped for sub in subscribers),
        }

    return api
