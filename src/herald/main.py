"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis, the notification
core and its worker pools). Middleware, CORS, and routers all
registered here.

Tests pass a ready-made core to create_app(core=...). ASGI test
transports don't run the lifespan, so the core is attached to
app.state up front and the lifespan leaves an injected core alone.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from herald import __version__
from herald.api import api_router
from herald.config import settings
from herald.core import NotificationCore, build_core

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "herald.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    if getattr(app.state, "core", None) is not None:
        yield
        return

    from herald.realtime.pubsub import close_redis, init_redis
    redis = None
    try:
        redis = await init_redis()
        logger.info("herald.redis_connected", url=settings.redis_url)
    except Exception as e:
        # Redis is optional with the memory/local backends; rate limits fail open
        logger.warning("herald.redis_unavailable", error=str(e))

    core = build_core(settings, redis=redis)
    app.state.core = core
    await core.start()

    yield

    logger.info("herald.shutdown")
    await core.stop()
    app.state.core = None
    await close_redis()


def create_app(core: Optional[NotificationCore] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Herald",
        description="Notification delivery and queueing service for external applications",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.core = core

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → RequestId → handler

    from herald.middleware.rate_limit import RateLimitMiddleware
    from herald.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    rpm = core.config.rate_limit_rpm if core is not None else settings.rate_limit_rpm
    app.add_middleware(RateLimitMiddleware, rpm=rpm)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from herald.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: herald.main:app)
app = create_app()
