"""Pytest fixtures for license billing tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from license_billing.calculators.types import TaxRuleSnapshot
from license_billing.config import BillingPolicy
from license_billing.database import make_session_factory
from license_billing.errors import MissingExchangeRate, MissingPaymentMethod, MissingTaxRules
from license_billing.models import (
    Base,
    EmployeeLicense,
    GlobalLicense,
    PaymentMethod,
    Tenant,
)
from license_billing.providers.base import Providers
from license_billing.services.employee_license_service import EmployeeLicenseService

# Start of a one-month period; whole months remaining until PERIOD_END is 1
NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
PERIOD_START = date(2026, 3, 1)
PERIOD_END = date(2026, 4, 1)

SALES_TAX = TaxRuleSnapshot(name="Sales tax", rate=Decimal("0.10"))


# ============================================================================
# Fake external collaborators
# ============================================================================


class FakeTaxProvider:
    def __init__(self, world: FakeWorld):
        self.world = world

    async def get_active_rules_for_country(
        self, country_code: str
    ) -> tuple[TaxRuleSnapshot, ...]:
        rules = self.world.tax_rules.get(country_code.upper())
        if not rules:
            raise MissingTaxRules(country_code)
        return tuple(rules)


class FakeExchangeRates:
    def __init__(self, world: FakeWorld):
        self.world = world

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency.upper() == to_currency.upper():
            return Decimal("1")
        try:
            return self.world.exchange_rates[(from_currency.upper(), to_currency.upper())]
        except KeyError:
            raise MissingExchangeRate(from_currency, to_currency) from None


class FakePaymentMethods:
    """Hands out one payment method row, loaded in the caller's session."""

    def __init__(self, session: AsyncSession, world: FakeWorld):
        self.session = session
        self.world = world

    async def get_default_for_country(self, country_code: str) -> PaymentMethod:
        if self.world.payment_method_id is None:
            raise MissingPaymentMethod(country_code)
        method = await self.session.get(PaymentMethod, self.world.payment_method_id)
        if method is None:
            raise MissingPaymentMethod(country_code)
        return method


@dataclass
class FakeWorld:
    """Mutable external data; tests edit it to simulate outages."""

    tax_rules: dict[str, list[TaxRuleSnapshot]] = field(
        default_factory=lambda: {"US": [SALES_TAX]}
    )
    exchange_rates: dict[tuple[str, str], Decimal] = field(
        default_factory=lambda: {("USD", "EUR"): Decimal("0.92")}
    )
    payment_method_id: UUID | None = None

    def providers(self, session: AsyncSession) -> Providers:
        return Providers(
            tax=FakeTaxProvider(self),
            exchange_rates=FakeExchangeRates(self),
            payment_methods=FakePaymentMethods(session, self),
        )


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def policy() -> BillingPolicy:
    return BillingPolicy()


@pytest.fixture
def world() -> FakeWorld:
    return FakeWorld()


@pytest.fixture
def providers(world: FakeWorld, session: AsyncSession) -> Providers:
    return world.providers(session)


# ============================================================================
# Seed data
# ============================================================================


async def seed_payment_method(session: AsyncSession, world: FakeWorld) -> PaymentMethod:
    method = PaymentMethod(code="card", name="Card", country_code=None, is_default=True)
    session.add(method)
    await session.flush()
    world.payment_method_id = method.payment_method_id
    return method


async def seed_license(
    session: AsyncSession,
    seats: int = 3,
    country_code: str = "US",
    currency: str = "USD",
    base_price_usd: Decimal = Decimal("10.00"),
    minimum_seats: int = 5,
    billing_cycle_months: int = 1,
    period_start: date = PERIOD_START,
    period_end: date = PERIOD_END,
) -> tuple[Tenant, GlobalLicense]:
    """A tenant with one active license and ``seats`` active seats."""
    tenant = Tenant(
        name="Acme",
        country_code=country_code,
        billing_currency=currency,
        billing_email="billing@acme.test",
    )
    session.add(tenant)
    await session.flush()

    license_ = GlobalLicense(
        tenant_id=tenant.tenant_id,
        billing_cycle_months=billing_cycle_months,
        base_price_usd=base_price_usd,
        minimum_seats=minimum_seats,
        current_period_start=period_start,
        current_period_end=period_end,
    )
    session.add(license_)
    await session.flush()

    service = EmployeeLicenseService(session)
    for i in range(seats):
        await service.add_seat(
            license_, f"E{i + 1:03d}", activation_date=period_start - timedelta(days=30)
        )
    return tenant, license_


async def add_seats(
    session: AsyncSession, license_: GlobalLicense, count: int, start: int = 100
) -> list[EmployeeLicense]:
    service = EmployeeLicenseService(session)
    return [
        await service.add_seat(
            license_, f"E{start + i:03d}", activation_date=PERIOD_START - timedelta(days=1)
        )
        for i in range(count)
    ]


@pytest_asyncio.fixture
async def payment_method(session: AsyncSession, world: FakeWorld) -> PaymentMethod:
    return await seed_payment_method(session, world)


@pytest_asyncio.fixture
async def licensed(
    session: AsyncSession, payment_method: PaymentMethod
) -> tuple[Tenant, GlobalLicense]:
    """Scenario A setup: price 10, minimum 5, monthly, 3 active seats, USD."""
    return await seed_license(session)
