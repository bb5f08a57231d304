"""Payment transaction lifecycle with cascading status updates."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.types import (
    AdjustmentStatus,
    BillingStatus,
    TransactionStatus,
)
from license_billing.clock import as_utc, utcnow
from license_billing.config import BillingPolicy
from license_billing.errors import Conflict, InvalidStateTransition, NotFound, ValidationFailed
from license_billing.models import (
    BillingCycle,
    LicenseAdjustment,
    PaymentMethod,
    PaymentTransaction,
)
from license_billing.services.state_machine import (
    AdjustmentStateMachine,
    BillingCycleStateMachine,
    TransactionStateMachine,
)

logger = logging.getLogger(__name__)


def generate_payment_reference(prefix: str, now: datetime) -> str:
    """System-assigned reference: PREFIX-YYYYMMDD-<12 hex chars>."""
    return f"{prefix}-{now:%Y%m%d}-{uuid4().hex[:12].upper()}"


class PaymentTransactionMachine:
    """Service driving payment transactions through their lifecycle.

    Operations:
    - initiate: open a pending transaction for a billing cycle and adjustment
    - start_processing: pending → processing
    - complete: processing → completed, settles the adjustment and cycle
    - fail: pending | processing → failed (reason required)
    - cancel: any non-final status → cancelled
    - refund: completed → refunded
    - retry: follow-up transaction for a failed or cancelled one

    Every transition is validated before anything is written and applied
    with a conditional UPDATE on the expected prior status, so two
    concurrent callers cannot both move the same transaction.
    """

    def __init__(self, session: AsyncSession, policy: BillingPolicy | None = None):
        self.session = session
        self.policy = policy or BillingPolicy()

    async def get(self, transaction_id: UUID) -> PaymentTransaction:
        txn = await self.session.get(PaymentTransaction, transaction_id)
        if txn is None:
            raise NotFound("Payment transaction", transaction_id)
        return txn

    async def get_by_reference(self, payment_reference: str) -> PaymentTransaction:
        result = await self.session.execute(
            select(PaymentTransaction).where(
                PaymentTransaction.payment_reference == payment_reference
            )
        )
        txn = result.scalar_one_or_none()
        if txn is None:
            raise NotFound("Payment transaction", payment_reference)
        return txn

    async def payment_history(self, license_id: UUID) -> list[PaymentTransaction]:
        """All transactions across the license's adjustments, newest first."""
        result = await self.session.execute(
            select(PaymentTransaction)
            .join(
                LicenseAdjustment,
                LicenseAdjustment.license_adjustment_id
                == PaymentTransaction.license_adjustment_id,
            )
            .where(LicenseAdjustment.global_license_id == license_id)
            .order_by(PaymentTransaction.initiated_at.desc(), PaymentTransaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def attempts_for(self, billing_cycle_id: UUID, adjustment_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PaymentTransaction)
            .where(
                PaymentTransaction.billing_cycle_id == billing_cycle_id,
                PaymentTransaction.license_adjustment_id == adjustment_id,
            )
        )
        return int(result.scalar_one())

    async def retries_exhausted(self, txn: PaymentTransaction) -> bool:
        attempts = await self.attempts_for(txn.billing_cycle_id, txn.license_adjustment_id)
        return attempts >= self.policy.max_payment_attempts

    async def is_final(self, txn: PaymentTransaction) -> bool:
        """Completed, cancelled, refunded, or failed with no retries left."""
        if TransactionStateMachine.is_terminal(txn.status):
            return True
        if txn.status == TransactionStatus.FAILED:
            return await self.retries_exhausted(txn)
        return False

    def new_transaction(
        self,
        billing_cycle: BillingCycle,
        adjustment: LicenseAdjustment,
        payment_method: PaymentMethod,
        now: datetime,
        supersedes: PaymentTransaction | None = None,
    ) -> PaymentTransaction:
        """Build a pending transaction without touching the session.

        The baseline adjustment pays the cycle total; any other adjustment
        pays its own total.
        """
        source: BillingCycle | LicenseAdjustment = (
            billing_cycle if adjustment.is_baseline else adjustment
        )
        txn = PaymentTransaction(
            amount_usd=source.total_amount_usd,
            amount_local=source.total_amount_local,
            currency=source.billing_currency,
            exchange_rate=source.exchange_rate,
            payment_reference=generate_payment_reference(
                self.policy.payment_reference_prefix, now
            ),
            status=TransactionStatus.PENDING.value,
            initiated_at=now,
            supersedes_transaction_id=(
                supersedes.payment_transaction_id if supersedes is not None else None
            ),
        )
        txn.billing_cycle = billing_cycle
        txn.adjustment = adjustment
        txn.payment_method = payment_method
        return txn

    async def initiate(
        self,
        billing_cycle: BillingCycle,
        adjustment: LicenseAdjustment,
        payment_method: PaymentMethod,
        now: datetime | None = None,
    ) -> PaymentTransaction:
        """Open a pending transaction for a cycle and adjustment pair.

        Raises:
            ValidationFailed: cycle and adjustment belong to different licenses
            Conflict: the adjustment is not payable or a transaction is already live
        """
        now = as_utc(now) if now else utcnow()
        await self._check_payable(billing_cycle, adjustment)

        txn = self.new_transaction(billing_cycle, adjustment, payment_method, now)
        self.session.add(txn)
        await self.session.flush()

        logger.info("Payment %s initiated for %s USD", txn.payment_reference, txn.amount_usd)
        return txn

    async def retry(
        self,
        txn: PaymentTransaction,
        payment_method: PaymentMethod | None = None,
        now: datetime | None = None,
    ) -> PaymentTransaction:
        """Create a follow-up pending transaction for a failed or cancelled one."""
        now = as_utc(now) if now else utcnow()

        if not TransactionStateMachine.can_retry(txn.status):
            raise InvalidStateTransition(
                txn.status,
                TransactionStatus.PENDING,
                "only failed or cancelled transactions can be retried",
            )
        if await self.retries_exhausted(txn):
            raise InvalidStateTransition(
                txn.status,
                TransactionStatus.PENDING,
                f"retry limit of {self.policy.max_payment_attempts} attempts reached",
            )

        superseded = await self.session.execute(
            select(PaymentTransaction.payment_transaction_id).where(
                PaymentTransaction.supersedes_transaction_id == txn.payment_transaction_id
            )
        )
        if superseded.first() is not None:
            raise Conflict(f"Transaction {txn.payment_reference} has already been retried")

        billing_cycle = await self._cycle(txn)
        adjustment = await self._adjustment(txn)
        await self._check_payable(billing_cycle, adjustment)

        if payment_method is None:
            payment_method = await self.session.get(PaymentMethod, txn.payment_method_id)
            if payment_method is None:
                raise NotFound("Payment method", txn.payment_method_id)

        new_txn = self.new_transaction(
            billing_cycle, adjustment, payment_method, now, supersedes=txn
        )
        self.session.add(new_txn)
        await self.session.flush()

        logger.info(
            "Payment %s retried as %s", txn.payment_reference, new_txn.payment_reference
        )
        return new_txn

    async def start_processing(
        self, txn: PaymentTransaction, now: datetime | None = None
    ) -> PaymentTransaction:
        now = as_utc(now) if now else utcnow()
        TransactionStateMachine.validate_transition(txn.status, TransactionStatus.PROCESSING)

        adjustment = await self._adjustment(txn)
        move_adjustment = not adjustment.is_baseline
        if move_adjustment:
            AdjustmentStateMachine.validate_transition(
                adjustment.payment_status, AdjustmentStatus.PROCESSING
            )

        await self._apply(txn, TransactionStatus.PROCESSING, processing_started_at=now)
        if move_adjustment:
            adjustment.payment_status = AdjustmentStatus.PROCESSING.value
        await self.session.flush()
        return txn

    async def complete(
        self, txn: PaymentTransaction, now: datetime | None = None
    ) -> PaymentTransaction:
        """Settle a processing transaction.

        Cascades: the adjustment becomes completed with its completion time
        stamped, and the billing cycle becomes paid.
        """
        now = as_utc(now) if now else utcnow()
        TransactionStateMachine.validate_transition(txn.status, TransactionStatus.COMPLETED)

        adjustment = await self._adjustment(txn)
        billing_cycle = await self._cycle(txn)
        if adjustment.payment_status != AdjustmentStatus.COMPLETED:
            AdjustmentStateMachine.validate_transition(
                adjustment.payment_status, AdjustmentStatus.COMPLETED
            )
        if not billing_cycle.is_paid:
            BillingCycleStateMachine.validate_transition(
                billing_cycle.billing_status, BillingStatus.PAID
            )

        await self._apply(txn, TransactionStatus.COMPLETED, completed_at=now)

        adjustment.payment_status = AdjustmentStatus.COMPLETED.value
        adjustment.payment_completed_at = now
        if not billing_cycle.is_paid:
            billing_cycle.billing_status = BillingStatus.PAID.value
            billing_cycle.paid_at = now
        await self.session.flush()
        return txn

    async def fail(
        self, txn: PaymentTransaction, reason: str, now: datetime | None = None
    ) -> PaymentTransaction:
        now = as_utc(now) if now else utcnow()
        TransactionStateMachine.validate_transition(txn.status, TransactionStatus.FAILED)
        if not reason or not reason.strip():
            raise ValidationFailed("A failure reason is required", field="reason")

        adjustment = await self._adjustment(txn)
        await self._apply(
            txn, TransactionStatus.FAILED, failed_at=now, failure_reason=reason.strip()
        )
        self._release_adjustment(adjustment)
        await self.session.flush()

        logger.warning("Payment %s failed: %s", txn.payment_reference, reason.strip())
        return txn

    async def cancel(
        self, txn: PaymentTransaction, now: datetime | None = None
    ) -> PaymentTransaction:
        now = as_utc(now) if now else utcnow()
        TransactionStateMachine.validate_transition(txn.status, TransactionStatus.CANCELLED)
        if txn.status == TransactionStatus.FAILED and await self.retries_exhausted(txn):
            raise InvalidStateTransition(
                txn.status, TransactionStatus.CANCELLED, "retry attempts exhausted"
            )

        adjustment = await self._adjustment(txn)
        await self._apply(txn, TransactionStatus.CANCELLED, cancelled_at=now)
        self._release_adjustment(adjustment)
        await self.session.flush()
        return txn

    async def refund(
        self, txn: PaymentTransaction, now: datetime | None = None
    ) -> PaymentTransaction:
        now = as_utc(now) if now else utcnow()
        TransactionStateMachine.validate_transition(txn.status, TransactionStatus.REFUNDED)

        adjustment = await self._adjustment(txn)
        move_adjustment = not adjustment.is_baseline
        if move_adjustment:
            AdjustmentStateMachine.validate_transition(
                adjustment.payment_status, AdjustmentStatus.REFUNDED
            )

        await self._apply(txn, TransactionStatus.REFUNDED, refunded_at=now)
        if move_adjustment:
            adjustment.payment_status = AdjustmentStatus.REFUNDED.value
        await self.session.flush()
        return txn

    async def _apply(
        self, txn: PaymentTransaction, to_status: TransactionStatus, **values: Any
    ) -> None:
        from_status = txn.status
        result = await self.session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.payment_transaction_id == txn.payment_transaction_id,
                PaymentTransaction.status == from_status,
            )
            .values(status=to_status.value, **values)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(
                from_status, to_status, "transaction was modified concurrently"
            )
        await self.session.refresh(txn)

        logger.info(
            "Payment %s: %s -> %s", txn.payment_reference, from_status, to_status.value
        )

    def _release_adjustment(self, adjustment: LicenseAdjustment) -> None:
        # A stopped payment hands the adjustment back for another attempt
        if not adjustment.is_baseline and adjustment.payment_status == AdjustmentStatus.PROCESSING:
            adjustment.payment_status = AdjustmentStatus.PENDING.value

    async def _check_payable(
        self, billing_cycle: BillingCycle, adjustment: LicenseAdjustment
    ) -> None:
        if adjustment.global_license_id != billing_cycle.global_license_id:
            raise ValidationFailed(
                "Billing cycle and adjustment belong to different licenses",
                field="license_adjustment_id",
            )
        # The base charge stays payable until its own transaction completes,
        # even if an adjustment payment already marked the cycle paid
        if not adjustment.is_baseline:
            if adjustment.payment_status != AdjustmentStatus.PENDING:
                raise Conflict(
                    f"Adjustment {adjustment.license_adjustment_id} is "
                    f"{adjustment.payment_status}, not pending"
                )
            if adjustment.invoice_sent_at is None:
                raise Conflict(
                    f"Adjustment {adjustment.license_adjustment_id} must be confirmed "
                    "before payment"
                )

        live = await self.session.execute(
            select(PaymentTransaction.payment_reference).where(
                PaymentTransaction.billing_cycle_id == billing_cycle.billing_cycle_id,
                PaymentTransaction.license_adjustment_id == adjustment.license_adjustment_id,
                PaymentTransaction.status.in_(sorted(TransactionStateMachine.LIVE)),
            )
        )
        existing = live.scalars().first()
        if existing is not None:
            raise Conflict(f"Payment {existing} is already open or completed")

    async def _adjustment(self, txn: PaymentTransaction) -> LicenseAdjustment:
        adjustment = await self.session.get(LicenseAdjustment, txn.license_adjustment_id)
        if adjustment is None:
            raise NotFound("Adjustment", txn.license_adjustment_id)
        return adjustment

    async def _cycle(self, txn: PaymentTransaction) -> BillingCycle:
        billing_cycle = await self.session.get(BillingCycle, txn.billing_cycle_id)
        if billing_cycle is None:
            raise NotFound("Billing cycle", txn.billing_cycle_id)
        return billing_cycle
