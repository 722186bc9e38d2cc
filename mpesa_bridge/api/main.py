"""
Main FastAPI application.

M-Pesa payment bridge for Shopify with:
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
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mpesa_bridge import __version__
from mpesa_bridge.config import Settings, get_settings
from mpesa_bridge.core.reconciliation import TransactionReconciler
from mpesa_bridge.core.store import TransactionStore
from mpesa_bridge.integrations.daraja_client import DarajaClient
from mpesa_bridge.integrations.shopify_client import ShopifyClient
from mpesa_bridge.monitoring.health import HealthCheck
from mpesa_bridge.monitoring.logging import setup_logging
from mpesa_bridge.workers.retention_sweeper import RetentionSweeper

from .routes import admin_router, monitoring_router, payment_router

logger = structlog.get_logger(__name__)


def _format_validation_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    message = error.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


def create_app(
    settings: Optional[Settings] = None,
    daraja_client: Optional[DarajaClient] = None,
    shopify_client: Optional[ShopifyClient] = None,
    store: Optional[TransactionStore] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Clients and the transaction store may be passed in (tests do); anything
    not given is built from settings when the application starts.
    """
    settings = settings or get_settings()

    # Setup logging first
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        daraja = daraja_client or DarajaClient(settings)
        shopify = shopify_client or ShopifyClient(settings)
        reconciler = TransactionReconciler(
            daraja,
            shopify,
            store=store,
            settings=settings,
        )
        sweeper = RetentionSweeper(reconciler, settings.sweep_interval_seconds)

        app.state.settings = settings
        app.state.daraja_client = daraja
        app.state.shopify_client = shopify
        app.state.reconciler = reconciler
        app.state.health_check = HealthCheck(settings)
        app.state.sweeper = sweeper

        # Startup
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            version=__version__,
            env=settings.app_env,
            daraja_env=settings.daraja_env,
            shortcode=settings.daraja_shortcode,
            till_no=settings.daraja_till_no,
            transaction_type=daraja.transaction_type,
            callback_url=settings.daraja_callback_url,
            shopify_store=settings.shopify_store_domain,
        )
        sweeper.start()

        yield

        # Shutdown
        logger.info("application_shutdown")
        await sweeper.stop()
        try:
            await daraja.close()
            await shopify.close()
            logger.info("http_clients_closed")
        except Exception as e:
            logger.error("http_client_shutdown_error", error=str(e))

    app = FastAPI(
        title="M-Pesa Shopify Bridge",
        description=(
            "Accepts M-Pesa STK push payments for Shopify checkouts. Sends the "
            "payment prompt, reconciles Daraja confirmations and creates paid orders."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
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

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed request bodies get the same itemized shape as checkout validation."""
        errors = [_format_validation_error(error) for error in exc.errors()]
        logger.warning("request_validation_failed", path=request.url.path, errors=errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "errors": errors},
        )

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

        message = "Internal server error" if settings.is_production else str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": message},
        )

    # Include routers
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
            "environment": settings.daraja_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app
