"""FastAPI application entrypoint.

Includes the attribution router and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI

from attribution_engine import schemas
from attribution_engine.config import get_settings
from attribution_engine.database import init_db
from attribution_engine.routers import attribution as attribution_router
from attribution_engine.services.rate_limiter import ForwardingLimits
from attribution_engine.telemetry import init_sentry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    init_sentry()

    app = FastAPI(
        title="Attribution Engine API",
        description="""
        Internal API of the multi-touch attribution engine.

        - Touchpoint and conversion ingestion
        - Pipeline trigger (attribution + purchase forwarding)
        - Per-model attribution results
        - Reconciliation sweeps

        All endpoints except /health require the X-Internal-Api-Key header.
        """,
        version="1.0.0",
    )

    app.include_router(attribution_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        app.state.forwarding_limits = ForwardingLimits.from_settings(settings)
        if settings.ENVIRONMENT == "development":
            init_db()
            logger.info("[STARTUP] Database tables ensured (development)")
        if not settings.INTERNAL_API_KEY:
            logger.warning("[STARTUP] INTERNAL_API_KEY is not set - tenant endpoints will return 503")

    return app


app = create_app()
