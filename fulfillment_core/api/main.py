"""
Main FastAPI application.

Order fulfillment core API with:
- CORS configuration
- Structured error responses for core errors
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fulfillment_core import __version__
from fulfillment_core.config import get_settings
from fulfillment_core.core.errors import FulfillmentError
from fulfillment_core.database.connection import close_db, init_db
from fulfillment_core.monitoring.logging import setup_logging
from fulfillment_core.services import Services, build_services

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
    worker_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Creates tables on startup when configured to, disposes the engine on shutdown.
    Both act on the engine the served services are bound to.
    """
    services = app.state.services
    settings = services.settings
    engine = services.session_factory.kw["bind"]
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    if app.state.init_database:
        try:
            await init_db(engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

    yield

    logger.info("application_shutdown")
    await close_db(engine)
    logger.info("database_connections_closed")


def create_app(services: Services | None = None, init_database: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Service graph to serve (defaults to one bound to the global engine)
        init_database: Create missing tables at startup

    Returns:
        FastAPI: Configured application
    """
    services = services or build_services()
    settings = services.settings

    app = FastAPI(
        title="Order Fulfillment Core",
        description=(
            "Payment verification and order transitions for order fulfillment. "
            "Features: idempotent verification, advisory order locks, deduplicated "
            "notification queue, reconciliation and health monitoring."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services
    app.state.init_database = init_database

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

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
        """Structured response for core errors; customers never see internals."""
        logger.warning(
            "request_rejected",
            error=exc.code,
            message=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
                "details": {},
            },
        )

    app.include_router(payment_router)
    app.include_router(order_router)
    app.include_router(admin_router)
    app.include_router(worker_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    setup_logging("api", settings)
    uvicorn.run(
        "fulfillment_core.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
