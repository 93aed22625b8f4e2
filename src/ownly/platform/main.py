"""
Main FastAPI application entry point for the Ownly billing service.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ownly.platform.billing.config import get_billing_config
from ownly.platform.billing.exceptions import BillingError
from ownly.platform.billing.invoicing.router import router as invoice_payment_router
from ownly.platform.billing.webhooks.router import router as billing_webhook_router
from ownly.platform.db import create_all_tables
from ownly.platform.logging import setup_logging
from ownly.platform.settings import settings

logger = structlog.get_logger(__name__)


def billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render billing errors with their own status code and payload."""
    if not isinstance(exc, BillingError):
        raise exc
    logger.warning(
        "billing.request_failed",
        path=request.url.path,
        error_code=exc.error_code,
        error=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifecycle events."""
    setup_logging()

    logger.info(
        "service.startup.begin",
        service=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    )

    if not settings.is_production:
        await create_all_tables()
        logger.info("database.tables_ensured")

    if get_billing_config().stripe is None:
        logger.warning("billing.stripe_not_configured")

    yield

    logger.info("service.shutdown.complete")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Ownly Billing",
        description="Billing and subscription engine for the Ownly platform",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    app.add_exception_handler(BillingError, billing_error_handler)
    app.include_router(billing_webhook_router, prefix="/api/v1")
    app.include_router(invoice_payment_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment.value,
        }

    return app


app = create_application()
