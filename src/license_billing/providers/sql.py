"""Providers backed by the reference tables."""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.types import TaxRuleSnapshot
from license_billing.errors import MissingExchangeRate, MissingPaymentMethod, MissingTaxRules
from license_billing.models import ExchangeRate, PaymentMethod, TaxRule
from license_billing.providers.base import Providers

ONE = Decimal("1")


class SqlTaxProvider:
    """Active ``tax_rule`` rows for a country, ordered by name."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_active_rules_for_country(
        self, country_code: str
    ) -> tuple[TaxRuleSnapshot, ...]:
        result = await self.session.execute(
            select(TaxRule)
            .where(
                TaxRule.country_code == country_code.upper(),
                TaxRule.is_active.is_(True),
            )
            .order_by(TaxRule.name)
        )
        rules = result.scalars().all()
        if not rules:
            raise MissingTaxRules(country_code)
        return tuple(TaxRuleSnapshot(name=r.name, rate=Decimal(r.rate)) for r in rules)


class SqlExchangeRateProvider:
    """Most recent active rate for a currency pair."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if from_currency.upper() == to_currency.upper():
            return ONE
        result = await self.session.execute(
            select(ExchangeRate.rate)
            .where(
                ExchangeRate.from_currency == from_currency.upper(),
                ExchangeRate.to_currency == to_currency.upper(),
                ExchangeRate.is_active.is_(True),
            )
            .order_by(ExchangeRate.effective_at.desc())
            .limit(1)
        )
        rate = result.scalar_one_or_none()
        if rate is None:
            raise MissingExchangeRate(from_currency, to_currency)
        return Decimal(rate)


class SqlPaymentMethodRegistry:
    """Per-country default method, falling back to any active method."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_default_for_country(self, country_code: str) -> PaymentMethod:
        result = await self.session.execute(
            select(PaymentMethod)
            .where(
                PaymentMethod.is_active.is_(True),
                PaymentMethod.country_code == country_code.upper(),
            )
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.code)
            .limit(1)
        )
        method = result.scalar_one_or_none()
        if method is not None:
            return method

        # Any active method, global ones first
        result = await self.session.execute(
            select(PaymentMethod)
            .where(PaymentMethod.is_active.is_(True))
            .order_by(
                PaymentMethod.country_code.is_(None).desc(),
                PaymentMethod.is_default.desc(),
                PaymentMethod.code,
            )
            .limit(1)
        )
        method = result.scalar_one_or_none()
        if method is None:
            raise MissingPaymentMethod(country_code)
        return method


def sql_providers(session: AsyncSession) -> Providers:
    """Build the SQL-backed providers for one session."""
    return Providers(
        tax=SqlTaxProvider(session),
        exchange_rates=SqlExchangeRateProvider(session),
        payment_methods=SqlPaymentMethodRegistry(session),
    )
