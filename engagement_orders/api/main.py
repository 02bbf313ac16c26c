"""
Main FastAPI application.

Engagement order API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engagement_orders import __version__
from engagement_orders.config import Settings, get_settings
from engagement_orders.core.reconciliation import ReconciliationEngine, build_reconciliation_engine
from engagement_orders.database.connection import close_db, init_db
from engagement_orders.integrations.webhook_handler import IpnHandler
from engagement_orders.monitoring.health import HealthCheck
from engagement_orders.monitoring.logging import setup_logging
from engagement_orders.workers.reconciliation_worker import ReconciliationScheduler

from .routes import admin_router, monitoring_router, order_router, payment_router, user_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


def _attach_services(app: FastAPI, engine: ReconciliationEngine) -> None:
    """Expose the engine and the services built on it to route dependencies."""
    app.state.engine = engine
    app.state.scheduler = ReconciliationScheduler(engine)
    app.state.ipn_handler = IpnHandler(engine)
    app.state.health_check = HealthCheck(
        catalog=engine.catalog, session_factory=engine.store.session_factory
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the reconciliation engine unless one was injected, creates
    tables and loads the service catalog.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        sandbox=settings.is_sandbox,
    )

    # Initialize database
    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    if getattr(app.state, "engine", None) is None:
        _attach_services(app, build_reconciliation_engine(settings))

    try:
        services = await app.state.engine.catalog.refresh()
        logger.info("service_catalog_ready", services=services)
    except Exception as e:
        # Order creation fails validation until an admin refresh succeeds
        logger.error("service_catalog_load_failed", error=str(e))

    yield

    # Shutdown
    logger.info("application_shutdown")
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


def create_app(
    engine: Optional[ReconciliationEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: Optional pre-built reconciliation engine (tests inject one)
        settings: Optional settings

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (engine.settings if engine is not None else get_settings())

    app = FastAPI(
        title="Engagement Order Service",
        description=(
            "Order reconciliation between Pesapal payments and the engagement supplier. "
            "Features: idempotent order creation, IPN handling, supplier submission, "
            "scheduled reconciliation sweeps and monitoring."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.engine = None
    if engine is not None:
        _attach_services(app, engine)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    # Include routers
    app.include_router(order_router)
    app.include_router(user_router)
    app.include_router(payment_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "sandbox": settings.is_sandbox,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "engagement_orders.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
