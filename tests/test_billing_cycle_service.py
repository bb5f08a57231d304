"""Tests for initial billing cycle generation."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.types import (
    AdjustmentStatus,
    BillingStatus,
    TaxRuleSnapshot,
    TransactionStatus,
)
from license_billing.errors import (
    Conflict,
    InvalidStateTransition,
    MissingExchangeRate,
    MissingPaymentMethod,
    MissingTaxRules,
    NotFound,
)
from license_billing.models import BillingCycle, LicenseAdjustment, PaymentTransaction
from license_billing.providers.base import Providers
from license_billing.services.billing_cycle_service import BillingCycleGenerator
from tests.conftest import NOW, PERIOD_END, PERIOD_START, FakeWorld, seed_license


async def _count(session: AsyncSession, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestGenerateInitialCycle:
    """The cycle, baseline adjustment and transaction are created together."""

    @pytest.mark.asyncio
    async def test_initial_cycle_amounts(self, session, providers, licensed):
        tenant, license_ = licensed
        generator = BillingCycleGenerator(session, providers)

        result = await generator.generate_initial_cycle(license_, tenant, NOW)

        cycle = result.billing_cycle
        assert result.created is True
        assert cycle.period_start == PERIOD_START
        assert cycle.period_end == PERIOD_END
        assert cycle.base_employee_count == 5
        assert cycle.final_employee_count == 5
        assert cycle.base_amount_usd == Decimal("50.00")
        assert cycle.tax_amount_usd == Decimal("5.00")
        assert cycle.total_amount_usd == Decimal("55.00")
        assert cycle.exchange_rate == Decimal("1")
        assert cycle.total_amount_local == Decimal("55.00")
        assert cycle.billing_currency == "USD"
        assert cycle.billing_status == BillingStatus.PENDING
        assert cycle.payment_due_date == PERIOD_END + timedelta(days=7)
        assert cycle.tax_rules == (TaxRuleSnapshot(name="Sales tax", rate=Decimal("0.10")),)
        assert cycle.is_local_total_consistent()

    @pytest.mark.asyncio
    async def test_baseline_adjustment(self, session, providers, licensed):
        tenant, license_ = licensed
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )

        baseline = result.baseline_adjustment
        assert baseline.is_baseline is True
        assert baseline.payment_status == AdjustmentStatus.COMPLETED
        assert baseline.employees_added_count == 0
        assert baseline.months_remaining == 1
        assert baseline.total_amount_usd == Decimal("0.00")
        assert baseline.payment_due_immediately is False
        assert baseline.is_open is False

    @pytest.mark.asyncio
    async def test_pending_transaction_for_cycle_total(
        self, session, providers, licensed, payment_method
    ):
        tenant, license_ = licensed
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )

        txn = result.transaction
        assert txn.status == TransactionStatus.PENDING
        assert txn.amount_usd == Decimal("55.00")
        assert txn.amount_local == Decimal("55.00")
        assert txn.currency == "USD"
        assert txn.billing_cycle_id == result.billing_cycle.billing_cycle_id
        assert txn.license_adjustment_id == result.baseline_adjustment.license_adjustment_id
        assert txn.payment_method_id == payment_method.payment_method_id
        assert txn.payment_reference.startswith("LIC-20260301-")
        assert txn.is_local_amount_consistent()

    @pytest.mark.asyncio
    async def test_license_marked_generated(self, session, providers, licensed):
        tenant, license_ = licensed
        await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )

        assert license_.billing_generated is True
        assert license_.next_renewal_date == PERIOD_END

    @pytest.mark.asyncio
    async def test_seats_above_minimum(self, session, providers, payment_method):
        tenant, license_ = await seed_license(session, seats=8)
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )

        assert result.billing_cycle.base_employee_count == 8
        assert result.billing_cycle.base_amount_usd == Decimal("80.00")
        assert result.billing_cycle.total_amount_usd == Decimal("88.00")

    @pytest.mark.asyncio
    async def test_foreign_currency(self, session, providers, payment_method):
        tenant, license_ = await seed_license(session, currency="EUR")
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )

        cycle = result.billing_cycle
        assert cycle.billing_currency == "EUR"
        assert cycle.exchange_rate == Decimal("0.92")
        assert cycle.total_amount_usd == Decimal("55.00")
        assert cycle.base_amount_local == Decimal("46.00")
        assert cycle.tax_amount_local == Decimal("4.60")
        assert cycle.total_amount_local == Decimal("50.60")
        assert result.transaction.amount_local == Decimal("50.60")

    @pytest.mark.asyncio
    async def test_quarterly_cycle(self, session, providers, payment_method):
        tenant, license_ = await seed_license(
            session, billing_cycle_months=3, period_end=date(2026, 6, 1)
        )
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )
        assert result.billing_cycle.base_amount_usd == Decimal("150.00")
        assert result.baseline_adjustment.months_remaining == 3


class TestIdempotency:
    """One cycle per license and period start."""

    @pytest.mark.asyncio
    async def test_second_call_returns_existing(self, session, providers, licensed):
        tenant, license_ = licensed
        generator = BillingCycleGenerator(session, providers)

        first = await generator.generate_initial_cycle(license_, tenant, NOW)
        second = await generator.generate_initial_cycle(license_, tenant, NOW + timedelta(hours=1))

        assert second.created is False
        assert second.billing_cycle.billing_cycle_id == first.billing_cycle.billing_cycle_id
        assert (
            second.baseline_adjustment.license_adjustment_id
            == first.baseline_adjustment.license_adjustment_id
        )
        assert (
            second.transaction.payment_transaction_id
            == first.transaction.payment_transaction_id
        )
        assert await _count(session, BillingCycle) == 1
        assert await _count(session, PaymentTransaction) == 1

    @pytest.mark.asyncio
    async def test_latest_cycle(self, session, providers, licensed):
        tenant, license_ = licensed
        generator = BillingCycleGenerator(session, providers)
        with pytest.raises(NotFound):
            await generator.latest_cycle(license_.global_license_id)

        result = await generator.generate_initial_cycle(license_, tenant, NOW)
        latest = await generator.latest_cycle(license_.global_license_id)
        assert latest.billing_cycle_id == result.billing_cycle.billing_cycle_id


class TestAtomicity:
    """A failed external lookup writes nothing."""

    async def _assert_nothing_written(self, session: AsyncSession, license_) -> None:
        assert await _count(session, BillingCycle) == 0
        assert await _count(session, LicenseAdjustment) == 0
        assert await _count(session, PaymentTransaction) == 0
        assert license_.billing_generated_at is None

    @pytest.mark.asyncio
    async def test_missing_tax_rules(self, session, providers, world: FakeWorld, licensed):
        tenant, license_ = licensed
        world.tax_rules = {}

        with pytest.raises(MissingTaxRules) as exc_info:
            await BillingCycleGenerator(session, providers).generate_initial_cycle(
                license_, tenant, NOW
            )

        assert exc_info.value.country_code == "US"
        await self._assert_nothing_written(session, license_)

    @pytest.mark.asyncio
    async def test_missing_exchange_rate(self, session, providers, payment_method):
        tenant, license_ = await seed_license(session, currency="GBP")

        with pytest.raises(MissingExchangeRate):
            await BillingCycleGenerator(session, providers).generate_initial_cycle(
                license_, tenant, NOW
            )

        await self._assert_nothing_written(session, license_)

    @pytest.mark.asyncio
    async def test_missing_payment_method(self, session, providers: Providers):
        tenant, license_ = await seed_license(session)

        with pytest.raises(MissingPaymentMethod) as exc_info:
            await BillingCycleGenerator(session, providers).generate_initial_cycle(
                license_, tenant, NOW
            )

        assert isinstance(exc_info.value, NotFound)
        await self._assert_nothing_written(session, license_)

    @pytest.mark.asyncio
    async def test_inactive_license(self, session, providers, licensed):
        tenant, license_ = licensed
        license_.status = "suspended"

        with pytest.raises(Conflict):
            await BillingCycleGenerator(session, providers).generate_initial_cycle(
                license_, tenant, NOW
            )


class TestCycleStatus:
    """Invoice and overdue transitions on the cycle itself."""

    @pytest.mark.asyncio
    async def test_invoiced_then_overdue(self, session, providers, licensed):
        tenant, license_ = licensed
        result = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            license_, tenant, NOW
        )
        cycle = result.billing_cycle

        cycle.mark_invoiced(NOW)
        assert cycle.billing_status == BillingStatus.INVOICED

        with pytest.raises(InvalidStateTransition):
            cycle.mark_overdue(cycle.payment_due_date)

        cycle.mark_overdue(cycle.payment_due_date + timedelta(days=1))
        assert cycle.billing_status == BillingStatus.OVERDUE

        with pytest.raises(InvalidStateTransition):
            cycle.mark_invoiced(NOW)
