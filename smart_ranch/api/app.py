"""
Web application factory and server entry point.
"""

from typing import Any, Optional

import structlog
from aiohttp import web

from ..analysis import HistoryStore
from ..vision import VisionProvider, create_vision_provider
from .middleware import (
    RateLimiter,
    api_key_middleware,
    cors_middleware,
    error_middleware,
    rate_limit_middleware,
)
from .routes import PROVIDER_KEY, SETTINGS_KEY, STORE_KEY, routes

logger = structlog.get_logger(__name__)


async def _close_provider(app: web.Application) -> None:
    await app[PROVIDER_KEY].close()


def create_app(
    settings: Optional[Any] = None,
    store: Optional[HistoryStore] = None,
    provider: Optional[VisionProvider] = None,
    limiter: Optional[RateLimiter] = None,
) -> web.Application:
    """
    Create the web application.

    Args:
        settings: Config instance; defaults to smart_ranch.config.config
        store: History store; built from settings when omitted
        provider: Vision provider; selected from settings when omitted
        limiter: Rate limiter; built from settings when omitted

    Returns:
        aiohttp Application ready for web.run_app() or a test server
    """
    if settings is None:
        from ..config import config as settings

    store = store or HistoryStore(settings.history_file, history_max=settings.history_max)
    provider = provider or create_vision_provider(settings)
    limiter = limiter or RateLimiter(settings.rate_limit_window_seconds, settings.rate_limit_max)

    # Base64 inflates by 4/3 plus JSON framing
    app = web.Application(
        client_max_size=settings.request_limit_bytes * 2,
        middlewares=[
            cors_middleware(settings.cors_origins),
            error_middleware,
            api_key_middleware(settings.api_access_key),
            rate_limit_middleware(limiter),
        ],
    )
    app[SETTINGS_KEY] = settings
    app[STORE_KEY] = store
    app[PROVIDER_KEY] = provider

    app.router.add_routes(routes)
    app.on_cleanup.append(_close_provider)

    logger.info("app_created", provider=provider.name, history_file=str(store.path))
    return app


def main() -> None:
    """Run the Smart Ranch backend using environment configuration."""
    from ..config import config, validate_environment_variables

    validate_environment_variables()
    app = create_app(config)
    logger.info("server_starting", host=config.host, port=config.port)
    web.run_app(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
