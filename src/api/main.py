"""TALLY FastAPI application — entry point for the API server."""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import get_settings
from src.billing.engine import build_engine
from src.core.logging import get_logger, setup_logging

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — build the billing engine, close it on exit."""
    setup_logging()
    log.info("api_starting")
    app.state.billing = await build_engine()
    yield
    await app.state.billing.close()
    app.state.billing = None
    log.info("api_shutdown")


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="TALLY API",
        description="Subscription entitlements and usage metering — REST API",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    from src.api.routes.health import router as health_router
    from src.api.routes.usage import router as usage_router
    from src.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")
    app.include_router(webhooks_router, prefix="/api")

    return app


app = create_app()
