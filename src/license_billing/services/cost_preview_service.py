"""Real-time cost previews for a tenant's active license."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.classifier import count_billable
from license_billing.calculators.cost_calculator import CostCalculator, round_money
from license_billing.calculators.types import LicenseStatus, TaxRuleSnapshot
from license_billing.clock import as_utc, utcnow
from license_billing.config import BillingPolicy
from license_billing.errors import NotFound
from license_billing.models import GlobalLicense, Tenant
from license_billing.providers.base import Providers
from license_billing.services.adjustment_service import AdjustmentEngine
from license_billing.services.employee_license_service import EmployeeLicenseService


@dataclass(frozen=True)
class CostPreview:
    """What the tenant would owe right now."""

    base_cost_usd: Decimal
    adjustments_usd: Decimal
    tax_amount_usd: Decimal
    total_usd: Decimal
    exchange_rate: Decimal
    total_local: Decimal
    currency: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_cost_usd": self.base_cost_usd,
            "adjustments_usd": self.adjustments_usd,
            "tax_amount_usd": self.tax_amount_usd,
            "total_usd": self.total_usd,
            "exchange_rate": self.exchange_rate,
            "total_local": self.total_local,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PeriodPreview:
    """Cost preview plus the period and pricing it was computed from."""

    period_start: date
    period_end: date
    current_billable_employees: int
    projected_costs: CostPreview
    base_price_per_employee: Decimal
    billing_cycle_months: int
    minimum_seats: int
    tax_rules_applied: tuple[TaxRuleSnapshot, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": {"start": self.period_start, "end": self.period_end},
            "current_billable_employees": self.current_billable_employees,
            "projected_costs": self.projected_costs.to_dict(),
            "breakdown": {
                "base_price_per_employee": self.base_price_per_employee,
                "billing_cycle_months": self.billing_cycle_months,
                "minimum_seats": self.minimum_seats,
                "tax_rules_applied": [rule.to_dict() for rule in self.tax_rules_applied],
            },
        }


class CostPreviewService:
    """Computes previews from live seat classifications.

    The base uses the same formula as billing cycles over the live
    billable count. Invoiced adjustments that are still unpaid are added
    before tax.
    """

    def __init__(
        self,
        session: AsyncSession,
        providers: Providers,
        policy: BillingPolicy | None = None,
        calculator: CostCalculator | None = None,
    ):
        self.session = session
        self.providers = providers
        self.policy = policy or BillingPolicy()
        self.calculator = calculator or CostCalculator(self.policy.tax_round_per_rule)
        self.seats = EmployeeLicenseService(session, self.policy)
        self.adjustments = AdjustmentEngine(session, providers, self.policy, self.calculator)

    async def active_license(self, tenant_id: UUID) -> GlobalLicense:
        result = await self.session.execute(
            select(GlobalLicense).where(
                GlobalLicense.tenant_id == tenant_id,
                GlobalLicense.status == LicenseStatus.ACTIVE.value,
            )
        )
        license_ = result.scalar_one_or_none()
        if license_ is None:
            raise NotFound("Active license for tenant", tenant_id)
        return license_

    async def current_cost(self, tenant_id: UUID, now: datetime | None = None) -> CostPreview:
        preview, _, _, _ = await self._compute(tenant_id, now)
        return preview

    async def period_preview(
        self, tenant_id: UUID, now: datetime | None = None
    ) -> PeriodPreview:
        preview, license_, billable, rules = await self._compute(tenant_id, now)
        return PeriodPreview(
            period_start=license_.current_period_start,
            period_end=license_.current_period_end,
            current_billable_employees=billable,
            projected_costs=preview,
            base_price_per_employee=license_.base_price_usd,
            billing_cycle_months=license_.billing_cycle_months,
            minimum_seats=license_.minimum_seats,
            tax_rules_applied=rules,
        )

    async def _compute(
        self, tenant_id: UUID, now: datetime | None
    ) -> tuple[CostPreview, GlobalLicense, int, tuple[TaxRuleSnapshot, ...]]:
        now = as_utc(now) if now else utcnow()
        tenant = await self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFound("Tenant", tenant_id)
        license_ = await self.active_license(tenant_id)

        currency = tenant.billing_currency.upper()
        if currency == self.policy.base_currency:
            exchange_rate = Decimal("1")
        else:
            exchange_rate = await self.providers.exchange_rates.get_rate(
                self.policy.base_currency, currency
            )
        rules = await self.providers.tax.get_active_rules_for_country(tenant.country_code)

        seats = await self.seats.list_seats(license_.global_license_id)
        billable = count_billable(seats, now)
        base_usd = self.calculator.base_cost(
            license_.base_price_usd,
            billable,
            license_.minimum_seats,
            license_.billing_cycle_months,
        )
        pending = await self.adjustments.pending_adjustments(license_.global_license_id)
        adjustments_usd = round_money(
            sum((a.subtotal_usd for a in pending.adjustments), Decimal("0"))
        )

        cost = self.calculator.breakdown(base_usd + adjustments_usd, rules, exchange_rate, currency)
        preview = CostPreview(
            base_cost_usd=base_usd,
            adjustments_usd=adjustments_usd,
            tax_amount_usd=cost.tax_usd,
            total_usd=cost.total_usd,
            exchange_rate=exchange_rate,
            total_local=cost.total_local,
            currency=currency,
        )
        return preview, license_, billable, rules
