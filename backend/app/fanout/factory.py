"""Factory wiring the fan-out proxy components together."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import ProxyConfig
from .gateway import SubscriberGateway
from .interface import MarketDataLink
from .router import SubscriptionRouter
from .upstream import UpstreamLink, redact_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FanoutProxy:
    """The wired core. The router owns the registry; the gateway owns subscribers."""

    link: MarketDataLink
    router: SubscriptionRouter
    gateway: SubscriberGateway

    async def stop(self) -> None:
        """Shut down downstream first, then close the upstream cleanly."""
        await self.gateway.close()
        await self.link.close()


def create_fanout_proxy(config: ProxyConfig, link: MarketDataLink | None = None) -> FanoutProxy:
    """Create the proxy components from validated configuration.

    Returns an unstarted proxy. Caller must call proxy.link.connect() from
    inside a running event loop.
    """
    if link is None:
        link = UpstreamLink(
            url=config.ws_url,
            max_reconnect_attempts=config.max_reconnect_attempts,
            reconnect_interval=config.reconnect_interval,
            heartbeat_interval=config.heartbeat_interval,
        )
        logger.info("Upstream provider: %s", redact_url(config.ws_url))

    router = SubscriptionRouter(link)
    gateway = SubscriberGateway(router, queue_size=config.subscriber_queue_size)
    return FanoutProxy(link=link, router=router, gateway=gateway)
