"""FastAPI application entrypoint.

Includes the analytics router and exposes a healthcheck endpoint. Runs are
processed by the arq workers (merchant_analytics/workers/arq_worker.py).
"""

import logging

from fastapi import FastAPI

from . import state
from .deps import get_redis, get_settings
from .routers import analytics as analytics_router
from .schemas import HealthResponse
from .telemetry import init_sentry
from .utils.env import load_env_file
from .workers.arq_enqueue import reset_arq_pool

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    load_env_file()
    init_sentry()

    app = FastAPI(
        title="Merchant Analytics API",
        description="""
        Computes each portal user's top merchants by current-month net volume
        and pushes the ranking to Salesforce.

        - Trigger a run for a user, then poll its status
        - Runs are processed asynchronously by arq workers
        """,
        version="1.0.0",
    )

    app.include_router(analytics_router.router)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Check Redis on startup without blocking boot."""
        settings = get_settings()
        try:
            await get_redis(settings).ping()
            logger.info("[STARTUP] Redis is reachable")
        except Exception as e:
            logger.warning("[STARTUP] Redis health check failed - triggers will fail until it recovers: %s", e)
            logger.warning("[STARTUP] Check REDIS_URL environment variable - currently: %s", settings.REDIS_URL)

    @app.on_event("shutdown")
    async def shutdown_event():
        await reset_arq_pool()
        await state.close_redis_client()

    return app


app = create_app()
