"""Tests for the payment transaction lifecycle."""

from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from license_billing.calculators.types import AdjustmentStatus, BillingStatus, TransactionStatus
from license_billing.config import BillingPolicy
from license_billing.errors import (
    Conflict,
    InvalidStateTransition,
    NotFound,
    ValidationFailed,
)
from license_billing.services.adjustment_service import AdjustmentEngine
from license_billing.services.billing_cycle_service import BillingCycleGenerator
from license_billing.services.payment_service import (
    PaymentTransactionMachine,
    generate_payment_reference,
)
from license_billing.services.state_machine import TransactionStateMachine
from tests.conftest import NOW, seed_license

OPERATIONS = {
    TransactionStatus.PROCESSING: lambda m, t: m.start_processing(t, NOW),
    TransactionStatus.COMPLETED: lambda m, t: m.complete(t, NOW),
    TransactionStatus.FAILED: lambda m, t: m.fail(t, "card declined", NOW),
    TransactionStatus.CANCELLED: lambda m, t: m.cancel(t, NOW),
    TransactionStatus.REFUNDED: lambda m, t: m.refund(t, NOW),
}


@pytest_asyncio.fixture
async def generated(session, providers, licensed):
    """Scenario A license with its initial cycle and pending transaction."""
    tenant, license_ = licensed
    return await BillingCycleGenerator(session, providers).generate_initial_cycle(
        license_, tenant, NOW
    )


async def _confirmed_adjustment(session, providers, license_):
    engine = AdjustmentEngine(session, providers)
    adjustment = await engine.propose_adjustment(license_, 2, NOW)
    return await engine.confirm_adjustment(adjustment, NOW)


class TestPaymentReference:
    def test_format(self):
        reference = generate_payment_reference("LIC", NOW)
        prefix, day, suffix = reference.split("-")
        assert prefix == "LIC"
        assert day == "20260301"
        assert len(suffix) == 12
        assert suffix == suffix.upper()

    def test_unique(self):
        assert len({generate_payment_reference("LIC", NOW) for _ in range(50)}) == 50


class TestIllegalTransitions:
    """Every illegal move raises and leaves the transaction untouched."""

    @pytest.mark.asyncio
    async def test_grid(self, session, generated, payment_method):
        machine = PaymentTransactionMachine(session)

        for from_status in TransactionStatus:
            for to_status, operation in OPERATIONS.items():
                if TransactionStateMachine.can_transition(from_status, to_status):
                    continue

                txn = machine.new_transaction(
                    generated.billing_cycle, generated.baseline_adjustment, payment_method, NOW
                )
                txn.status = from_status.value
                if from_status == TransactionStatus.FAILED:
                    txn.failure_reason = "insufficient funds"
                session.add(txn)
                await session.flush()

                with pytest.raises(InvalidStateTransition):
                    await operation(machine, txn)

                await session.refresh(txn)
                assert txn.status == from_status.value, (from_status, to_status)
                assert txn.completed_at is None
                assert txn.refunded_at is None


class TestLifecycle:
    """Cascades from the transaction to the adjustment and the cycle."""

    @pytest.mark.asyncio
    async def test_baseline_payment_settles_cycle(self, session, generated):
        machine = PaymentTransactionMachine(session)
        txn = generated.transaction

        await machine.start_processing(txn, NOW)
        assert txn.status == TransactionStatus.PROCESSING
        assert txn.processing_started_at is not None

        await machine.complete(txn, NOW + timedelta(minutes=1))

        assert txn.status == TransactionStatus.COMPLETED
        assert txn.completed_at is not None
        assert generated.baseline_adjustment.payment_status == AdjustmentStatus.COMPLETED
        assert generated.baseline_adjustment.payment_completed_at is not None
        assert generated.billing_cycle.billing_status == BillingStatus.PAID
        assert generated.billing_cycle.paid_at is not None

    @pytest.mark.asyncio
    async def test_second_complete_changes_nothing(self, session, generated):
        machine = PaymentTransactionMachine(session)
        txn = generated.transaction
        await machine.start_processing(txn, NOW)
        await machine.complete(txn, NOW)
        completed_at = txn.completed_at
        paid_at = generated.billing_cycle.paid_at

        with pytest.raises(InvalidStateTransition):
            await machine.complete(txn, NOW + timedelta(days=1))

        await session.refresh(txn)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.completed_at == completed_at
        assert generated.billing_cycle.paid_at == paid_at

    @pytest.mark.asyncio
    async def test_adjustment_payment(self, session, providers, generated, licensed):
        _, license_ = licensed
        adjustment = await _confirmed_adjustment(session, providers, license_)
        machine = PaymentTransactionMachine(session)

        txn = await machine.initiate(
            generated.billing_cycle, adjustment, generated.transaction.payment_method, NOW
        )
        assert txn.amount_usd == Decimal("22.00")
        assert txn.status == TransactionStatus.PENDING

        await machine.start_processing(txn, NOW)
        assert adjustment.payment_status == AdjustmentStatus.PROCESSING

        await machine.complete(txn, NOW)
        assert adjustment.payment_status == AdjustmentStatus.COMPLETED
        assert adjustment.payment_completed_at is not None
        assert generated.billing_cycle.billing_status == BillingStatus.PAID

        await machine.refund(txn, NOW)
        assert txn.status == TransactionStatus.REFUNDED
        assert txn.refunded_at is not None
        assert adjustment.payment_status == AdjustmentStatus.REFUNDED
        assert generated.billing_cycle.billing_status == BillingStatus.PAID

    @pytest.mark.asyncio
    async def test_failure_releases_adjustment(self, session, providers, generated, licensed):
        _, license_ = licensed
        adjustment = await _confirmed_adjustment(session, providers, license_)
        machine = PaymentTransactionMachine(session)
        txn = await machine.initiate(
            generated.billing_cycle, adjustment, generated.transaction.payment_method, NOW
        )
        await machine.start_processing(txn, NOW)

        await machine.fail(txn, "  card declined  ", NOW)

        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "card declined"
        assert txn.failed_at is not None
        assert adjustment.payment_status == AdjustmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_pending(self, session, generated):
        machine = PaymentTransactionMachine(session)
        await machine.cancel(generated.transaction, NOW)
        assert generated.transaction.status == TransactionStatus.CANCELLED
        assert generated.transaction.cancelled_at is not None
        assert await machine.is_final(generated.transaction) is True

    @pytest.mark.asyncio
    async def test_fail_requires_reason(self, session, generated):
        machine = PaymentTransactionMachine(session)
        with pytest.raises(ValidationFailed):
            await machine.fail(generated.transaction, "  ", NOW)
        assert generated.transaction.status == TransactionStatus.PENDING


class TestInitiate:
    """Guards on opening a transaction."""

    @pytest.mark.asyncio
    async def test_unconfirmed_adjustment(self, session, providers, generated, licensed):
        _, license_ = licensed
        adjustment = await AdjustmentEngine(session, providers).propose_adjustment(
            license_, 2, NOW
        )
        with pytest.raises(Conflict):
            await PaymentTransactionMachine(session).initiate(
                generated.billing_cycle, adjustment, generated.transaction.payment_method, NOW
            )

    @pytest.mark.asyncio
    async def test_live_transaction_blocks_another(self, session, generated):
        with pytest.raises(Conflict):
            await PaymentTransactionMachine(session).initiate(
                generated.billing_cycle,
                generated.baseline_adjustment,
                generated.transaction.payment_method,
                NOW,
            )

    @pytest.mark.asyncio
    async def test_cycle_and_adjustment_must_match(self, session, providers, generated):
        tenant, other_license = await seed_license(session)
        other = await BillingCycleGenerator(session, providers).generate_initial_cycle(
            other_license, tenant, NOW
        )
        with pytest.raises(ValidationFailed):
            await PaymentTransactionMachine(session).initiate(
                generated.billing_cycle,
                other.baseline_adjustment,
                generated.transaction.payment_method,
                NOW,
            )

    @pytest.mark.asyncio
    async def test_lookup_by_reference(self, session, generated, licensed):
        _, license_ = licensed
        machine = PaymentTransactionMachine(session)

        found = await machine.get_by_reference(generated.transaction.payment_reference)
        assert found.payment_transaction_id == generated.transaction.payment_transaction_id

        history = await machine.payment_history(license_.global_license_id)
        assert [t.payment_transaction_id for t in history] == [
            generated.transaction.payment_transaction_id
        ]

        with pytest.raises(NotFound):
            await machine.get_by_reference("LIC-00000000-000000000000")


class TestRetry:
    """Follow-up transactions after failure or cancellation."""

    @pytest.mark.asyncio
    async def test_retry_failed(self, session, generated):
        machine = PaymentTransactionMachine(session)
        original = generated.transaction
        await machine.fail(original, "timeout", NOW)

        retried = await machine.retry(original, now=NOW + timedelta(hours=1))

        assert retried.payment_transaction_id != original.payment_transaction_id
        assert retried.status == TransactionStatus.PENDING
        assert retried.supersedes_transaction_id == original.payment_transaction_id
        assert retried.payment_reference != original.payment_reference
        assert retried.amount_usd == original.amount_usd
        assert retried.payment_method_id == original.payment_method_id
        assert original.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_base_charge_collectable_after_adjustment_paid(
        self, session, providers, generated, licensed
    ):
        """An adjustment settling the cycle first leaves the base charge payable."""
        _, license_ = licensed
        adjustment = await _confirmed_adjustment(session, providers, license_)
        machine = PaymentTransactionMachine(session)
        base = generated.transaction
        method = base.payment_method
        extra = await machine.initiate(generated.billing_cycle, adjustment, method, NOW)
        await machine.start_processing(extra, NOW)
        await machine.complete(extra, NOW)
        assert generated.billing_cycle.billing_status == BillingStatus.PAID
        assert base.status == TransactionStatus.PENDING

        await machine.fail(base, "card declined", NOW)
        retried = await machine.retry(base, now=NOW + timedelta(hours=1))

        assert retried.status == TransactionStatus.PENDING
        assert retried.amount_usd == Decimal("55.00")
        await machine.start_processing(retried, NOW + timedelta(hours=1))
        await machine.complete(retried, NOW + timedelta(hours=1))
        assert retried.status == TransactionStatus.COMPLETED

        with pytest.raises(Conflict):
            await machine.initiate(
                generated.billing_cycle, generated.baseline_adjustment, method, NOW
            )

    @pytest.mark.asyncio
    async def test_retry_only_once_per_transaction(self, session, generated):
        machine = PaymentTransactionMachine(session)
        original = generated.transaction
        await machine.cancel(original, NOW)
        retried = await machine.retry(original, now=NOW)
        await machine.cancel(retried, NOW)

        with pytest.raises(Conflict):
            await machine.retry(original, now=NOW)

    @pytest.mark.asyncio
    async def test_retry_requires_failed_or_cancelled(self, session, generated):
        with pytest.raises(InvalidStateTransition):
            await PaymentTransactionMachine(session).retry(generated.transaction, now=NOW)

    @pytest.mark.asyncio
    async def test_attempts_are_limited(self, session, generated):
        machine = PaymentTransactionMachine(session, BillingPolicy(max_payment_attempts=3))
        txn = generated.transaction

        for attempt in range(1, 3):
            await machine.fail(txn, f"attempt {attempt} declined", NOW)
            assert await machine.is_final(txn) is False
            txn = await machine.retry(txn, now=NOW)

        await machine.fail(txn, "attempt 3 declined", NOW)

        assert await machine.attempts_for(
            txn.billing_cycle_id, txn.license_adjustment_id
        ) == 3
        assert await machine.is_final(txn) is True
        with pytest.raises(InvalidStateTransition):
            await machine.retry(txn, now=NOW)
        with pytest.raises(InvalidStateTransition):
            await machine.cancel(txn, NOW)
        assert txn.status == TransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_failed_can_be_cancelled_before_exhaustion(self, session, generated):
        machine = PaymentTransactionMachine(session)
        await machine.fail(generated.transaction, "declined", NOW)
        await machine.cancel(generated.transaction, NOW)
        assert generated.transaction.status == TransactionStatus.CANCELLED
