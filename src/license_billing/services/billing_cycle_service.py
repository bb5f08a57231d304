"""Initial billing cycle generation on license activation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.classifier import count_billable
from license_billing.calculators.cost_calculator import CostCalculator
from license_billing.calculators.types import (
    AdjustmentStatus,
    BillingStatus,
    LicenseStatus,
)
from license_billing.clock import as_utc, utcnow
from license_billing.config import BillingPolicy
from license_billing.errors import Conflict, NotFound
from license_billing.models import (
    BillingCycle,
    GlobalLicense,
    LicenseAdjustment,
    PaymentTransaction,
)
from license_billing.providers.base import Providers, TenantInfo
from license_billing.services.employee_license_service import EmployeeLicenseService
from license_billing.services.payment_service import PaymentTransactionMachine

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class GenerationResult:
    """The billing graph of one period.

    ``created`` is False when the cycle already existed and was returned
    unchanged.
    """

    billing_cycle: BillingCycle
    baseline_adjustment: LicenseAdjustment
    transaction: PaymentTransaction
    created: bool


class BillingCycleGenerator:
    """Creates the first billing cycle of an activated license.

    The cycle, its zero-value baseline adjustment and the pending payment
    transaction are written in a single flush after every external lookup
    has succeeded. Nothing is committed here: the caller's unit of work
    commits the whole graph or rolls all of it back, and
    ``GlobalLicense.billing_generated_at`` stays NULL until it commits.
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
        self.payments = PaymentTransactionMachine(session, self.policy)

    async def find_cycle(self, license_: GlobalLicense) -> BillingCycle | None:
        """The cycle for the license's current period, if any."""
        result = await self.session.execute(
            select(BillingCycle).where(
                BillingCycle.global_license_id == license_.global_license_id,
                BillingCycle.period_start == license_.current_period_start,
            )
        )
        return result.scalar_one_or_none()

    async def latest_cycle(self, license_id: UUID) -> BillingCycle:
        result = await self.session.execute(
            select(BillingCycle)
            .where(BillingCycle.global_license_id == license_id)
            .order_by(BillingCycle.period_start.desc())
            .limit(1)
        )
        billing_cycle = result.scalar_one_or_none()
        if billing_cycle is None:
            raise NotFound("Billing cycle for license", license_id)
        return billing_cycle

    async def generate_initial_cycle(
        self,
        license_: GlobalLicense,
        tenant: TenantInfo,
        now: datetime | None = None,
    ) -> GenerationResult:
        """Generate the cycle, baseline adjustment and pending transaction.

        Idempotent per (license, period start): an existing cycle is
        returned unchanged with ``created=False``.

        Raises:
            Conflict: the license is not active
            MissingExchangeRate, MissingTaxRules, MissingPaymentMethod:
                required external data is unavailable (nothing is written)
        """
        now = as_utc(now) if now else utcnow()
        if license_.status != LicenseStatus.ACTIVE:
            raise Conflict(
                f"License {license_.global_license_id} is {license_.status}, not active"
            )

        existing = await self.find_cycle(license_)
        if existing is not None:
            return await self._existing_result(existing)

        # External lookups first; any failure leaves the session untouched
        currency = tenant.billing_currency.upper()
        if currency == self.policy.base_currency:
            exchange_rate = Decimal("1")
        else:
            exchange_rate = await self.providers.exchange_rates.get_rate(
                self.policy.base_currency, currency
            )
        rules = await self.providers.tax.get_active_rules_for_country(tenant.country_code)
        payment_method = await self.providers.payment_methods.get_default_for_country(
            tenant.country_code
        )

        await self.seats.refresh_seat_count(license_)
        seats = await self.seats.list_seats(license_.global_license_id)
        billable = count_billable(seats, now)

        base_employee_count = license_.seats_to_charge
        cost = self.calculator.cycle_cost(
            price_per_seat_usd=license_.base_price_usd,
            billable_seats=license_.total_seats_purchased,
            minimum_seats=license_.minimum_seats,
            billing_cycle_months=license_.billing_cycle_months,
            rules=rules,
            exchange_rate=exchange_rate,
            currency=currency,
        )

        billing_cycle = BillingCycle(
            global_license_id=license_.global_license_id,
            period_start=license_.current_period_start,
            period_end=license_.current_period_end,
            base_employee_count=base_employee_count,
            final_employee_count=max(base_employee_count, billable),
            base_amount_usd=cost.base_usd,
            adjustments_amount_usd=ZERO,
            tax_amount_usd=cost.tax_usd,
            total_amount_usd=cost.total_usd,
            base_amount_local=cost.base_local,
            adjustments_amount_local=ZERO,
            tax_amount_local=cost.tax_local,
            total_amount_local=cost.total_local,
            billing_currency=currency,
            exchange_rate=exchange_rate,
            tax_rules_applied=cost.tax_rules_json,
            billing_status=BillingStatus.PENDING.value,
            payment_due_date=license_.current_period_end
            + timedelta(days=self.policy.payment_due_days),
        )
        baseline = LicenseAdjustment(
            global_license_id=license_.global_license_id,
            adjustment_date=now,
            employees_added_count=0,
            months_remaining=license_.billing_cycle_months,
            price_per_employee_usd=license_.base_price_usd,
            subtotal_usd=ZERO,
            tax_amount_usd=ZERO,
            total_amount_usd=ZERO,
            subtotal_local=ZERO,
            tax_amount_local=ZERO,
            total_amount_local=ZERO,
            billing_currency=currency,
            exchange_rate=exchange_rate,
            tax_rules_applied=cost.tax_rules_json,
            payment_status=AdjustmentStatus.COMPLETED.value,
            payment_due_immediately=False,
            is_baseline=True,
        )
        transaction = self.payments.new_transaction(billing_cycle, baseline, payment_method, now)

        self.session.add_all([billing_cycle, baseline, transaction])
        license_.billing_generated_at = now
        if license_.next_renewal_date is None:
            license_.next_renewal_date = license_.current_period_end
        await self.session.flush()

        if not billing_cycle.is_local_total_consistent():
            logger.warning(
                "Billing cycle %s local total %s drifts from its parts",
                billing_cycle.billing_cycle_id,
                billing_cycle.total_amount_local,
            )
        logger.info(
            "Billing cycle %s generated for license %s: %s USD (%s %s), billed to %s",
            billing_cycle.billing_cycle_id,
            license_.global_license_id,
            billing_cycle.total_amount_usd,
            billing_cycle.total_amount_local,
            currency,
            tenant.billing_email,
        )
        return GenerationResult(
            billing_cycle=billing_cycle,
            baseline_adjustment=baseline,
            transaction=transaction,
            created=True,
        )

    async def _existing_result(self, billing_cycle: BillingCycle) -> GenerationResult:
        result = await self.session.execute(
            select(PaymentTransaction, LicenseAdjustment)
            .join(
                LicenseAdjustment,
                LicenseAdjustment.license_adjustment_id
                == PaymentTransaction.license_adjustment_id,
            )
            .where(
                PaymentTransaction.billing_cycle_id == billing_cycle.billing_cycle_id,
                LicenseAdjustment.is_baseline.is_(True),
            )
            .order_by(PaymentTransaction.initiated_at.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            raise NotFound("Baseline adjustment for billing cycle", billing_cycle.billing_cycle_id)
        transaction, baseline = row
        return GenerationResult(
            billing_cycle=billing_cycle,
            baseline_adjustment=baseline,
            transaction=transaction,
            created=False,
        )
