"""Protocols for the engine's external collaborators.

Services receive these explicitly; the SQL-backed implementations live in
``license_billing.providers.sql`` and tests pass in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Protocol

from license_billing.calculators.types import TaxRuleSnapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from license_billing.models import PaymentMethod


class TaxProvider(Protocol):
    """Source of active tax rules per country."""

    async def get_active_rules_for_country(
        self, country_code: str
    ) -> tuple[TaxRuleSnapshot, ...]:
        """Return the ordered active rules.

        Raises MissingTaxRules if the country has no rule set on record.
        """
        ...


class ExchangeRateProvider(Protocol):
    """Source of currency conversion rates."""

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Return the current rate.

        Identical currencies return 1. Raises MissingExchangeRate otherwise
        when no rate is on record.
        """
        ...


class PaymentMethodRegistry(Protocol):
    """Lookup of payment methods."""

    async def get_default_for_country(self, country_code: str) -> PaymentMethod:
        """Return the country's default method, else any active one.

        Raises MissingPaymentMethod when none is available.
        """
        ...


class TenantInfo(Protocol):
    """Billing-relevant tenant attributes."""

    country_code: str
    billing_currency: str
    billing_email: str | None


@dataclass(frozen=True)
class Providers:
    """Collaborators bound to one unit of work."""

    tax: TaxProvider
    exchange_rates: ExchangeRateProvider
    payment_methods: PaymentMethodRegistry


ProvidersFactory = Callable[["AsyncSession"], Providers]
