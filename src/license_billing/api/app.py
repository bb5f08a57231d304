"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from license_billing.api.routes import billing_router, health_router
from license_billing.config import BillingPolicy, get_settings
from license_billing.database import dispose_db, init_db
from license_billing.engine import BillingEngine
from license_billing.errors import (
    AntiFraudRejected,
    BillingError,
    Conflict,
    InvalidStateTransition,
    MissingExchangeRate,
    MissingPaymentMethod,
    MissingTaxRules,
    NotFound,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

# Most specific first: MissingPaymentMethod is a NotFound, DuplicateAdjustment a Conflict
ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (MissingPaymentMethod, status.HTTP_424_FAILED_DEPENDENCY),
    (MissingExchangeRate, status.HTTP_424_FAILED_DEPENDENCY),
    (MissingTaxRules, status.HTTP_424_FAILED_DEPENDENCY),
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (AntiFraudRejected, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Conflict, status.HTTP_409_CONFLICT),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
]


def status_for(exc: BillingError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    _, session_factory = init_db()
    app.state.billing_engine = BillingEngine(
        session_factory, policy=BillingPolicy.from_settings(get_settings())
    )
    yield
    # Shutdown
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(
        title="License Billing API",
        description="License billing and employee-activity state engine",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(BillingError)
    async def billing_exception_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        """Map engine errors to distinct client-facing codes."""
        content: dict[str, Any] = {"detail": exc.message, "code": exc.code}
        if exc.context:
            content["context"] = jsonable_encoder(exc.context)
        return JSONResponse(status_code=status_for(exc), content=content)

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(billing_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
