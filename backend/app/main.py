"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.dependencies import SafetyEngine, build_engine, prepare_storage
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.locations import router as location_router
from backend.app.api.v1.monitoring import router as monitoring_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(
    config: Optional[Settings] = None,
    engine: Optional[SafetyEngine] = None,
) -> FastAPI:
    """
    Build the application.

    Parameters
    ----------
    config : Settings, optional
        Defaults to the environment-loaded settings.
    engine : SafetyEngine, optional
        A pre-wired engine (tests). When omitted the lifespan builds one
        from ``config`` and closes it on shutdown.
    """
    config = config or settings

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT,
        )
        running = engine or build_engine(config)
        app.state.engine = running
        await prepare_storage(running)
        if config.ENABLE_SCHEDULER:
            await running.scheduler.start()
        yield
        logger.info("Shutting down %s", config.APP_NAME)
        await running.close()

    app = FastAPI(
        title=config.APP_NAME,
        description=(
            "Emergency alert orchestration for tourist safety. "
            "Ingests location pings, detects danger-zone entry and "
            "prolonged inactivity, opens at most one alert per user and "
            "type, and fans notifications out over SMS, email, push and "
            "an emergency-services webhook with a full delivery audit trail."
        ),
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (order matters — outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS if not config.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(location_router)
    app.include_router(alert_router)
    app.include_router(monitoring_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": config.APP_NAME,
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "modules": [
                "geo-index",
                "safety-scanner",
                "alert-store",
                "notification-dispatch",
                "source-router",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(request.app.state.engine)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(request.app.state.engine)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
