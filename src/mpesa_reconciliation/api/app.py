"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mpesa_reconciliation import __version__
from mpesa_reconciliation.api.routes import (
    callbacks_router,
    health_router,
    orders_router,
    payments_router,
    transactions_router,
)
from mpesa_reconciliation.config import get_settings, validate_production_config
from mpesa_reconciliation.container import ServiceContainer, build_container
from mpesa_reconciliation.database import dispose_db, init_db
from mpesa_reconciliation.errors import (
    ConflictError,
    DataIntegrityError,
    GatewayError,
    NotFoundError,
    PollingTimeoutError,
    ReconciliationError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[ReconciliationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (DataIntegrityError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PollingTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: ReconciliationError) -> int:
    """HTTP status for a domain error."""
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    owns_container = getattr(app.state, "container", None) is None
    if owns_container:
        settings = get_settings()
        for issue in validate_production_config(settings):
            logger.warning("Config: %s", issue)
        _, session_factory = init_db(settings.database_url)
        app.state.container = build_container(settings, session_factory)
    yield
    # Shutdown
    container: ServiceContainer = app.state.container
    await container.aclose()
    if owns_container:
        await dispose_db()


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Pass a prebuilt container to share services with the caller (tests).
    """
    app = FastAPI(
        title="M-Pesa Reconciliation API",
        description="Push-payment reconciliation against orders",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(ReconciliationError)
    async def reconciliation_exception_handler(
        request: Request, exc: ReconciliationError
    ) -> JSONResponse:
        """Map domain errors to status codes."""
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(callbacks_router, prefix="/api/v1")
    app.include_router(transactions_router, prefix="/api/v1")
    app.include_router(orders_router, prefix="/api/v1")

    return app
