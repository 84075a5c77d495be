"""
LoadPilot - Main Application Entry Point

FastAPI service that runs k6 load tests as Kubernetes jobs, tracks their lifecycle
and streams status updates to clients.
"""

from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import logging

from loadpilot import __version__
from loadpilot.config import settings

# Configure logging
# **IMPORTANT**: Use uvicorn's colored "LEVEL:" format for ALL loggers.
from uvicorn.logging import DefaultFormatter

console_handler = logging.StreamHandler()
console_handler.setFormatter(DefaultFormatter(fmt="%(levelprefix)s %(asctime)s - %(message)s", use_colors=True))

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    handlers=[console_handler],
)

# The Kubernetes client logs every request at DEBUG/INFO through urllib3.
logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)


class EndpointFilter(logging.Filter):
    """Filter out high-frequency endpoints from access logs."""

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if "/api/load-tests/status" in msg or "/ws/status" in msg:
            return False
        if "/health" in msg:
            return False
        return True


logging.getLogger("uvicorn.access").addFilter(EndpointFilter())

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown events.
    """
    from loadpilot.connectors import postgres_pool
    from loadpilot.core.container import build_services
    from loadpilot.core.repositories import ensure_schema

    # Startup
    logger.info("🚀 LoadPilot starting up...")
    logger.info(
        f"🔧 Environment: {'Development' if settings.APP_DEBUG else 'Production'}"
    )

    services = build_services()
    app.state.services = services

    try:
        if settings.POSTGRES_CONNECT_ON_STARTUP:
            logger.info("🐘 Initializing Postgres connection pool...")
            await services.pool.initialize()
            await ensure_schema(services.pool)
            logger.info("✅ Postgres pool initialized, schema ready")
        else:
            logger.info(
                "🐘 Not connecting to Postgres on startup "
                "(set POSTGRES_CONNECT_ON_STARTUP=true to initialize at boot)"
            )
    except Exception as e:
        logger.error(f"❌ Failed to initialize Postgres: {e}")
        logger.warning("⚠️  Application starting without database connections")

    try:
        await services.telemetry.ensure_database()
        logger.info(f"📈 InfluxDB database '{settings.INFLUXDB_DATABASE}' ready")
    except Exception as e:
        logger.warning(f"⚠️  InfluxDB bootstrap failed (non-fatal): {e}")

    try:
        await services.bus.connect()
        await services.fanout.start()
        logger.info(f"📡 Status bus subscribed to '{settings.STATUS_TOPIC}'")
    except Exception as e:
        logger.warning(f"⚠️  Status bus unavailable; updates stay local: {e}")

    try:
        reattached = await services.coordinator.reconcile()
        logger.info(f"🔁 Reconciled running load tests ({reattached} re-attached)")
    except Exception as e:
        logger.warning(f"⚠️  Run reconciliation failed (non-fatal): {e}")

    try:
        count = await services.cron.start()
        logger.info(f"⏰ Cron scheduler running with {count} schedule(s)")
    except Exception as e:
        logger.error(f"❌ Failed to start cron scheduler: {e}")

    yield

    # Shutdown
    logger.info("🛑 LoadPilot shutting down...")
    await services.close()

    try:
        await postgres_pool.close_default_pool()
        logger.info("✅ Connection pools closed")
    except Exception as e:
        logger.error(f"Error closing connection pools: {e}")


# Initialize FastAPI application
app = FastAPI(
    title="LoadPilot",
    description="Load-test orchestration: k6 jobs on Kubernetes with live status and metrics",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

# Configure CORS for local development
if settings.APP_DEBUG:
    app.add_middleware(
        cast(Any, CORSMiddleware),
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info(f"🔓 CORS enabled for origins: {settings.CORS_ORIGINS}")


# ============================================================================
# Health Check & Info Endpoints
# ============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        dict: Service health status and version information
    """
    health_status: dict[str, Any] = {
        "status": "healthy",
        "service": "loadpilot",
        "version": __version__,
        "environment": "development" if settings.APP_DEBUG else "production",
        "checks": {},
    }

    services = getattr(app.state, "services", None)
    if services is None:
        health_status["status"] = "starting"
        return health_status

    try:
        stats = await services.pool.get_pool_stats()
        is_healthy = await services.pool.is_healthy()
        health_status["checks"]["postgres"] = {
            "status": "healthy" if is_healthy else "unhealthy",
            "pool": stats,
        }
        if not is_healthy:
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["checks"]["postgres"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    checks = (
        ("redis", services.bus.is_healthy),
        ("influxdb", services.telemetry.ping),
    )
    for name, probe in checks:
        try:
            ok = await probe()
        except Exception as e:
            health_status["checks"][name] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "degraded"
            continue
        health_status["checks"][name] = {"status": "healthy" if ok else "unhealthy"}
        if not ok:
            health_status["status"] = "degraded"

    return health_status


@app.get("/api/info")
async def api_info():
    """
    API information endpoint.

    Returns:
        dict: Application configuration and capabilities
    """
    return {
        "name": "LoadPilot",
        "version": __version__,
        "description": "Load-test orchestration for k6 on Kubernetes",
        "namespace": settings.K8S_NAMESPACE,
        "k6_image": settings.K6_IMAGE,
        "features": {
            "step_types": ["API", "BROWSER"],
            "live_status": ["sse", "websocket"],
            "cron_schedules": True,
            "default_metrics_interval": settings.DEFAULT_METRICS_INTERVAL,
        },
        "endpoints": {
            "api_docs": "/api/docs",
            "health": "/health",
            "load_tests": "/api/load-tests",
            "metrics": "/api/metrics",
            "schedulers": "/api/schedulers",
            "status_ws": "/ws/status",
        },
    }


# ============================================================================
# API Routes
# ============================================================================

from loadpilot.api.routes import load_tests  # noqa: E402
from loadpilot.api.routes import metrics  # noqa: E402
from loadpilot.api.routes import schedulers  # noqa: E402

app.include_router(load_tests.router, prefix="/api/load-tests", tags=["load-tests"])
app.include_router(metrics.router, prefix="/api/metrics", tags=["metrics"])
app.include_router(schedulers.router, prefix="/api/schedulers", tags=["schedulers"])


# ============================================================================
# WebSocket endpoint - uses websocket package for streaming implementation
# ============================================================================

from loadpilot.websocket import stream_status  # noqa: E402


@app.websocket("/ws/status")
async def websocket_status(websocket: WebSocket):
    """
    WebSocket endpoint for live run status of one user.

    The user comes from the X-User-Id header or a ``user_id`` query parameter
    (browsers cannot set headers on WebSocket upgrades).
    """
    user_id = (
        websocket.headers.get("x-user-id")
        or websocket.query_params.get("user_id")
        or ""
    ).strip()
    services = getattr(websocket.app.state, "services", None)
    if not user_id or services is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    logger.info(f"📡 WebSocket connected for user: {user_id}")

    try:
        await stream_status(websocket, services.fanout, user_id)
    except WebSocketDisconnect:
        logger.info(f"📡 WebSocket disconnected for user: {user_id}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        try:
            await websocket.close()
        except Exception:
            pass


if __name__ == "__main__":
    import uvicorn

    # **IMPORTANT**: log_config=None prevents uvicorn from overriding our logging setup.
    uvicorn.run(
        "loadpilot.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )
