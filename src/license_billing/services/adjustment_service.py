"""Prorated mid-period adjustments for seat growth."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.classifier import count_billable
from license_billing.calculators.cost_calculator import CostCalculator, round_money
from license_billing.calculators.types import (
    AdjustmentStatus,
    CostBreakdown,
    LicenseStatus,
    TransactionStatus,
)
from license_billing.clock import as_utc, start_of_day, utcnow, whole_months_between
from license_billing.config import BillingPolicy
from license_billing.errors import (
    Conflict,
    DuplicateAdjustment,
    InvalidStateTransition,
    NotFound,
    ValidationFailed,
)
from license_billing.models import (
    BillingCycle,
    GlobalLicense,
    LicenseAdjustment,
    PaymentTransaction,
    Tenant,
)
from license_billing.providers.base import Providers, TenantInfo
from license_billing.services.employee_license_service import EmployeeLicenseService
from license_billing.services.state_machine import AdjustmentStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAdjustments:
    """Invoiced adjustments still awaiting payment."""

    adjustments: list[LicenseAdjustment]
    total_pending_usd: Decimal


class AdjustmentEngine:
    """Service for mid-period license adjustments.

    A license has at most one open adjustment (pending and not yet
    invoiced). New seats arriving while one is open are merged into it:
    earlier seats keep their proration and only tax and conversion are
    recomputed on the combined subtotal. Callers must hold the license lock so
    the existence check and the write are not interleaved; the partial
    unique index on ``license_adjustment`` backs this up at the storage
    boundary.
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

    async def get_adjustment(self, adjustment_id: UUID) -> LicenseAdjustment:
        adjustment = await self.session.get(LicenseAdjustment, adjustment_id)
        if adjustment is None:
            raise NotFound("Adjustment", adjustment_id)
        return adjustment

    async def list_adjustments(self, license_id: UUID) -> list[LicenseAdjustment]:
        result = await self.session.execute(
            select(LicenseAdjustment)
            .where(LicenseAdjustment.global_license_id == license_id)
            .order_by(LicenseAdjustment.adjustment_date.desc())
        )
        return list(result.scalars().all())

    async def find_open_adjustment(self, license_id: UUID) -> LicenseAdjustment | None:
        result = await self.session.execute(
            select(LicenseAdjustment).where(
                LicenseAdjustment.global_license_id == license_id,
                LicenseAdjustment.payment_status == AdjustmentStatus.PENDING.value,
                LicenseAdjustment.invoice_sent_at.is_(None),
                LicenseAdjustment.is_baseline.is_(False),
            )
        )
        return result.scalars().first()

    async def propose_adjustment(
        self,
        license_: GlobalLicense,
        newly_added_seats: int,
        now: datetime | None = None,
        tenant: TenantInfo | None = None,
    ) -> LicenseAdjustment:
        """Charge for seats added mid-period, merging into any open adjustment.

        Raises:
            ValidationFailed: non-positive seat count
            Conflict: license not active
            MissingExchangeRate, MissingTaxRules: external data unavailable
            DuplicateAdjustment: a concurrent writer inserted an open adjustment
        """
        now = as_utc(now) if now else utcnow()
        if newly_added_seats <= 0:
            raise ValidationFailed(
                "newly_added_seats must be positive", field="newly_added_seats"
            )
        if license_.status != LicenseStatus.ACTIVE:
            raise Conflict(
                f"License {license_.global_license_id} is {license_.status}, not active"
            )
        if tenant is None:
            tenant = await self._tenant(license_)

        months_remaining = whole_months_between(now.date(), license_.current_period_end)
        open_adjustment = await self.find_open_adjustment(license_.global_license_id)
        prior_subtotal = Decimal("0")
        prior_lines: list[dict[str, Any]] = []
        employees_added = newly_added_seats
        if open_adjustment is not None:
            employees_added += open_adjustment.employees_added_count
            prior_subtotal = open_adjustment.subtotal_usd
            prior_lines = list(open_adjustment.proration_lines or [])

        cost = await self._cost(
            tenant, newly_added_seats, months_remaining, license_.base_price_usd, prior_subtotal
        )
        line = {
            "employees": newly_added_seats,
            "price_usd": str(license_.base_price_usd),
            "months": months_remaining,
            "subtotal_usd": str(cost.base_usd - prior_subtotal),
            "proposed_at": now.isoformat(),
        }

        if open_adjustment is not None:
            adjustment = open_adjustment
            self._apply_cost(
                adjustment, cost, employees_added, months_remaining, now, license_.base_price_usd
            )
            adjustment.proration_lines = [*prior_lines, line]
            await self.session.flush()
            logger.info(
                "Merged %d seats into adjustment %s (%d total, %s USD)",
                newly_added_seats,
                adjustment.license_adjustment_id,
                employees_added,
                adjustment.total_amount_usd,
            )
        else:
            adjustment = LicenseAdjustment(
                global_license_id=license_.global_license_id,
                payment_status=AdjustmentStatus.PENDING.value,
                payment_due_immediately=True,
                is_baseline=False,
            )
            self._apply_cost(
                adjustment, cost, employees_added, months_remaining, now, license_.base_price_usd
            )
            adjustment.proration_lines = [line]
            self.session.add(adjustment)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                raise DuplicateAdjustment(license_.global_license_id) from exc
            logger.info(
                "Adjustment %s created for license %s: %s",
                adjustment.license_adjustment_id,
                license_.global_license_id,
                adjustment.calculation_breakdown,
            )

        if not adjustment.is_local_total_consistent():
            logger.warning(
                "Adjustment %s local total %s drifts from its parts",
                adjustment.license_adjustment_id,
                adjustment.total_amount_local,
            )
        return adjustment

    async def recorded_seat_count(self, license_: GlobalLicense) -> int:
        """Seats already charged this period.

        The latest cycle's final count plus every non-cancelled,
        non-baseline adjustment since.
        """
        cycle_result = await self.session.execute(
            select(BillingCycle.final_employee_count, BillingCycle.period_start)
            .where(BillingCycle.global_license_id == license_.global_license_id)
            .order_by(BillingCycle.period_start.desc())
            .limit(1)
        )
        row = cycle_result.first()
        if row is None:
            raise NotFound("Billing cycle for license", license_.global_license_id)
        final_count, period_start = row

        added_result = await self.session.execute(
            select(func.coalesce(func.sum(LicenseAdjustment.employees_added_count), 0)).where(
                LicenseAdjustment.global_license_id == license_.global_license_id,
                LicenseAdjustment.is_baseline.is_(False),
                LicenseAdjustment.payment_status.notin_(
                    [AdjustmentStatus.CANCELLED.value, AdjustmentStatus.REFUNDED.value]
                ),
                LicenseAdjustment.adjustment_date >= start_of_day(period_start),
            )
        )
        return int(final_count) + int(added_result.scalar_one())

    async def detect_growth(
        self, license_: GlobalLicense, now: datetime | None = None
    ) -> LicenseAdjustment | None:
        """Propose an adjustment if live billable seats exceed those charged."""
        now = as_utc(now) if now else utcnow()
        seats = await self.seats.list_seats(license_.global_license_id)
        live = count_billable(seats, now)
        recorded = await self.recorded_seat_count(license_)
        if live <= recorded:
            return None
        return await self.propose_adjustment(license_, live - recorded, now)

    async def confirm_adjustment(
        self, adjustment: LicenseAdjustment, now: datetime | None = None
    ) -> LicenseAdjustment:
        """Mark an open adjustment as invoiced. Payment status is unchanged."""
        now = as_utc(now) if now else utcnow()
        if adjustment.payment_status != AdjustmentStatus.PENDING:
            raise InvalidStateTransition(
                adjustment.payment_status,
                "invoiced",
                "only pending adjustments can be confirmed",
            )
        if adjustment.is_baseline:
            raise InvalidStateTransition(
                adjustment.payment_status, "invoiced", "baseline adjustments are not invoiced"
            )
        if adjustment.invoice_sent_at is not None:
            raise InvalidStateTransition(
                adjustment.payment_status, "invoiced", "adjustment was already confirmed"
            )

        result = await self.session.execute(
            update(LicenseAdjustment)
            .where(
                LicenseAdjustment.license_adjustment_id == adjustment.license_adjustment_id,
                LicenseAdjustment.payment_status == AdjustmentStatus.PENDING.value,
                LicenseAdjustment.invoice_sent_at.is_(None),
            )
            .values(invoice_sent_at=now)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                adjustment.payment_status, "invoiced", "adjustment was modified concurrently"
            )
        await self.session.refresh(adjustment)

        logger.info("Adjustment %s confirmed", adjustment.license_adjustment_id)
        return adjustment

    async def cancel_adjustment(self, adjustment: LicenseAdjustment) -> LicenseAdjustment:
        """Withdraw a pending adjustment that has no live payment."""
        AdjustmentStateMachine.validate_transition(
            adjustment.payment_status, AdjustmentStatus.CANCELLED
        )
        if adjustment.is_baseline:
            raise InvalidStateTransition(
                adjustment.payment_status,
                AdjustmentStatus.CANCELLED,
                "baseline adjustments cannot be cancelled",
            )
        live = await self.session.execute(
            select(PaymentTransaction.payment_reference).where(
                PaymentTransaction.license_adjustment_id == adjustment.license_adjustment_id,
                PaymentTransaction.status.in_(
                    [TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value]
                ),
            )
        )
        reference = live.scalars().first()
        if reference is not None:
            raise Conflict(f"Payment {reference} is still open for this adjustment")

        adjustment.payment_status = AdjustmentStatus.CANCELLED.value
        await self.session.flush()
        logger.info("Adjustment %s cancelled", adjustment.license_adjustment_id)
        return adjustment

    async def pending_adjustments(self, license_id: UUID) -> PendingAdjustments:
        result = await self.session.execute(
            select(LicenseAdjustment)
            .where(
                LicenseAdjustment.global_license_id == license_id,
                LicenseAdjustment.is_baseline.is_(False),
                LicenseAdjustment.invoice_sent_at.isnot(None),
                LicenseAdjustment.payment_status.in_(
                    [AdjustmentStatus.PENDING.value, AdjustmentStatus.PROCESSING.value]
                ),
            )
            .order_by(LicenseAdjustment.adjustment_date)
        )
        adjustments = list(result.scalars().all())
        total = round_money(sum((a.total_amount_usd for a in adjustments), Decimal("0")))
        return PendingAdjustments(adjustments=adjustments, total_pending_usd=total)

    async def _tenant(self, license_: GlobalLicense) -> Tenant:
        tenant = await self.session.get(Tenant, license_.tenant_id)
        if tenant is None:
            raise NotFound("Tenant", license_.tenant_id)
        return tenant

    async def _cost(
        self,
        tenant: TenantInfo,
        employees_added: int,
        months_remaining: int,
        price: Decimal,
        prior_subtotal: Decimal,
    ) -> CostBreakdown:
        currency = tenant.billing_currency.upper()
        if currency == self.policy.base_currency:
            exchange_rate = Decimal("1")
        else:
            exchange_rate = await self.providers.exchange_rates.get_rate(
                self.policy.base_currency, currency
            )
        rules = await self.providers.tax.get_active_rules_for_country(tenant.country_code)
        return self.calculator.adjustment_cost(
            employees_added=employees_added,
            months_remaining=months_remaining,
            price_per_employee_usd=price,
            rules=rules,
            exchange_rate=exchange_rate,
            currency=currency,
            prior_subtotal_usd=prior_subtotal,
        )

    @staticmethod
    def _apply_cost(
        adjustment: LicenseAdjustment,
        cost: CostBreakdown,
        employees_added: int,
        months_remaining: int,
        now: datetime,
        price: Decimal,
    ) -> None:
        if AdjustmentStateMachine.financials_locked(adjustment.payment_status):
            raise Conflict(
                f"Adjustment {adjustment.license_adjustment_id} is "
                f"{adjustment.payment_status}; its amounts are final"
            )
        adjustment.adjustment_date = now
        adjustment.employees_added_count = employees_added
        adjustment.months_remaining = months_remaining
        adjustment.price_per_employee_usd = price
        adjustment.subtotal_usd = cost.base_usd
        adjustment.tax_amount_usd = cost.tax_usd
        adjustment.total_amount_usd = cost.total_usd
        adjustment.subtotal_local = cost.base_local
        adjustment.tax_amount_local = cost.tax_local
        adjustment.total_amount_local = cost.total_local
        adjustment.billing_currency = cost.currency
        adjustment.exchange_rate = cost.exchange_rate
        adjustment.tax_rules_applied = cost.tax_rules_json
