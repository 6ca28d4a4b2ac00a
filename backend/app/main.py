"""ASGI application and console entry point for the fan-out proxy."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from app.fanout import (
    ConfigError,
    FanoutProxy,
    ProxyConfig,
    create_fanout_proxy,
    create_gateway_router,
    create_health_router,
    load_config,
)

logger = logging.getLogger(__name__)


def create_app(config: ProxyConfig, proxy: FanoutProxy | None = None) -> FastAPI:
    """Build the FastAPI app around a (possibly pre-wired) proxy."""
    proxy = proxy or create_fanout_proxy(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        proxy.link.connect()
        logger.info("Fan-out proxy listening on ws://%s:%d", config.host, config.port)
        try:
            yield
        finally:
            logger.info("Shutting down fan-out proxy")
            await proxy.stop()

    app = FastAPI(title="Market Data Fan-out Proxy", lifespan=lifespan)
    app.state.proxy = proxy
    app.include_router(create_health_router(proxy.link, proxy.router, proxy.gateway, port=config.port))
    app.include_router(create_gateway_router(proxy.gateway))
    return app


def main() -> None:
    try:
        config = load_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
