"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.config import BillingPolicy
from license_billing.database import init_db
from license_billing.engine import BillingEngine
from license_billing.providers.base import Providers


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    _, factory = init_db()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_billing_engine(request: Request) -> BillingEngine:
    """The engine created at startup."""
    return request.app.state.billing_engine


def get_policy(engine: Annotated[BillingEngine, Depends(get_billing_engine)]) -> BillingPolicy:
    return engine.policy


def get_providers(
    db: Annotated[AsyncSession, Depends(get_db_session)],
    engine: Annotated[BillingEngine, Depends(get_billing_engine)],
) -> Providers:
    return engine.providers_factory(db)


async def get_tenant_id(
    x_tenant_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract tenant ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID format",
        ) from None


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
Engine = Annotated[BillingEngine, Depends(get_billing_engine)]
Policy = Annotated[BillingPolicy, Depends(get_policy)]
ProvidersDep = Annotated[Providers, Depends(get_providers)]
