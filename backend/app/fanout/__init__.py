"""Market data fan-out subsystem.

Public API:
    PriceEvent            - One upstream price tick, routed by symbol
    LinkState             - Upstream connection states
    MarketDataLink        - Abstract interface for the upstream connection
    UpstreamLink          - WebSocket implementation with reconnect/heartbeat
    SubscriptionRegistry  - Reference-counted symbol interest bookkeeping
    SubscriptionRouter    - Serialized subscribe/unsubscribe and event fan-out
    SubscriberGateway     - Downstream WebSocket connection handling
    ProxyConfig           - Immutable settings, see load_config
    create_fanout_proxy   - Factory wiring the components above
"""

from .config import ConfigError, ProxyConfig, load_config
from .factory import FanoutProxy, create_fanout_proxy
from .gateway import SubscriberGateway, create_gateway_router
from .health import create_health_router
from .interface import MarketDataLink
from .models import LinkState, PriceEvent, SubscriberState
from .registry import SubscriptionRegistry
from .router import SubscriptionRouter
from .upstream import UpstreamLink

__all__ = [
    "ConfigError",
    "FanoutProxy",
    "LinkState",
    "MarketDataLink",
    "PriceEvent",
    "ProxyConfig",
    "SubscriberGateway",
    "SubscriberState",
    "SubscriptionRegistry",
    "SubscriptionRouter",
    "UpstreamLink",
    "create_fanout_proxy",
    "create_gateway_router",
    "create_health_router",
    "load_config",
]
