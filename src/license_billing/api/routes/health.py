"""Health check endpoints.

``/health`` also reports whether the reference data billing depends on
is present: without active tax rules or payment methods no cycle can be
generated.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from license_billing.api.dependencies import DbSession
from license_billing.clock import utcnow
from license_billing.models import PaymentMethod, TaxRule

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str
    active_tax_rules: int | None = None
    active_payment_methods: int | None = None


@router.get("/health", response_model=HealthResponse)
async def health_check(db: DbSession) -> HealthResponse:
    """Database reachability plus reference data counts."""
    try:
        tax_rules = await db.scalar(
            select(func.count()).select_from(TaxRule).where(TaxRule.is_active.is_(True))
        )
        methods = await db.scalar(
            select(func.count())
            .select_from(PaymentMethod)
            .where(PaymentMethod.is_active.is_(True))
        )
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        return HealthResponse(status="degraded", timestamp=utcnow(), database="unhealthy")

    billable = bool(tax_rules) and bool(methods)
    return HealthResponse(
        status="healthy" if billable else "degraded",
        timestamp=utcnow(),
        database="healthy",
        active_tax_rules=tax_rules,
        active_payment_methods=methods,
    )


@router.get("/ready")
async def readiness_check(request: Request) -> JSONResponse:
    """Ready once startup has built the billing engine."""
    if getattr(request.app.state, "billing_engine", None) is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "starting"},
        )
    return JSONResponse(content={"status": "ready"})


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    return {"status": "alive"}
