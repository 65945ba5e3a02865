"""wagate FastAPI application."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from wagate import __version__
from wagate.api.middleware import (
    ApiKeyMiddleware,
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SlidingWindowLimiter,
)
from wagate.api.routes import health, sessions
from wagate.config.settings import Settings, settings as default_settings
from wagate.session import (
    BootstrapKind,
    LifecycleController,
    ReconnectPolicy,
    load_socket_factory,
)
from wagate.store import CredentialStore, StoreError, create_backend

logger = logging.getLogger(__name__)


def build_store(config: Settings) -> CredentialStore:
    backend = create_backend(config.STORE_BACKEND, config.REDIS_URL)
    return CredentialStore(
        backend,
        prefix=config.KEY_PREFIX,
        session_ttl=config.SESSION_TTL_SECONDS,
        connected_ttl=config.CONNECTED_TTL_SECONDS,
    )


def build_controller(config: Settings, store: CredentialStore | None = None) -> LifecycleController:
    """Wire a LifecycleController from settings."""
    return LifecycleController(
        store or build_store(config),
        load_socket_factory(config.SOCKET_FACTORY),
        bootstrap_mode=BootstrapKind(config.BOOTSTRAP_MODE),
        policy=ReconnectPolicy(
            delay=config.RECONNECT_DELAY_SECONDS,
            max_attempts=config.MAX_RECONNECT_ATTEMPTS,
        ),
        connect_deadline=config.CONNECT_DEADLINE_SECONDS,
        pairing_delay=config.PAIRING_CODE_DELAY_SECONDS,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    owns_controller = app.state.controller is None
    if owns_controller:
        app.state.controller = build_controller(app.state.settings)

    controller: LifecycleController = app.state.controller
    if not await controller.store.backend.ping():
        logger.warning("Session store not reachable at startup")

    logger.info("wagate %s started (store=%s)", __version__, app.state.settings.STORE_BACKEND)
    yield

    await controller.shutdown()
    if owns_controller:
        await controller.store.backend.close()


def create_app(
    settings: Settings | None = None,
    controller: LifecycleController | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration; defaults to the environment-loaded settings.
        controller: A ready controller. When omitted, one is built from
            ``settings`` at startup and torn down at shutdown.
    """
    config = settings or default_settings

    app = FastAPI(
        title="wagate",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.controller = controller

    app.add_middleware(ApiKeyMiddleware, api_keys=config.API_KEYS)
    app.add_middleware(
        RateLimitMiddleware,
        api_limiter=SlidingWindowLimiter(config.RATE_LIMIT_MAX_REQUESTS, config.RATE_LIMIT_WINDOW_SECONDS),
        connect_limiter=SlidingWindowLimiter(
            config.CONNECT_RATE_LIMIT_MAX_REQUESTS, config.CONNECT_RATE_LIMIT_WINDOW_SECONDS
        ),
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router)
    app.include_router(sessions.router)

    # --- Exception handlers ---

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Session store unavailable"})

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()
