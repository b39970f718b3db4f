"""FastAPI application factory.

Creates the app with request logging middleware, lifespan events for
structlog and database initialization, the v1 API router and the
Prometheus /metrics endpoint.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.leadsync.api.middleware import LoggingMiddleware
from src.leadsync.api.v1.router import router as v1_router
from src.leadsync.config import get_settings
from src.leadsync.core.database import close_db, init_db
from src.leadsync.core.logging import configure_structlog
from src.leadsync.core.monitoring import get_metrics_response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: configure logging and init DB on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    configure_structlog()
    await init_db()
    log.info("app.started", environment=get_settings().ENVIRONMENT.value)

    yield

    await close_db()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Lead Sync API",
        version="0.1.0",
        description="External CRM to internal lead table sync and reconciliation",
        lifespan=lifespan,
    )

    app.add_middleware(LoggingMiddleware)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
