"""BillingEngine facade.

Wires the services together and runs each operation as one unit of work
scoped to a license:

    engine = BillingEngine(session_factory)
    result = await engine.activate_license(license_id)
    adjustment = await engine.detect_growth(license_id)
    await engine.confirm_adjustment(adjustment.license_adjustment_id)
    txn = await engine.initiate_payment(adjustment.license_adjustment_id)
    await engine.start_processing(txn.payment_transaction_id)
    await engine.complete(txn.payment_transaction_id)

A unit of work holds the in-process license lock, opens a session, takes
the database lock on the license, runs the operation and commits. Any
error rolls the whole unit back and propagates unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from license_billing.calculators.types import LeaveType, LicenseStatus
from license_billing.config import BillingPolicy
from license_billing.database import lock_license
from license_billing.errors import Conflict, InvalidStateTransition, NotFound
from license_billing.models import (
    EmployeeLicense,
    GlobalLicense,
    LicenseAdjustment,
    PaymentMethod,
    PaymentTransaction,
    Tenant,
)
from license_billing.providers.base import Providers, ProvidersFactory
from license_billing.providers.sql import sql_providers
from license_billing.services.adjustment_service import AdjustmentEngine
from license_billing.services.billing_cycle_service import (
    BillingCycleGenerator,
    GenerationResult,
)
from license_billing.services.employee_license_service import EmployeeLicenseService
from license_billing.services.locking import LicenseLocks
from license_billing.services.payment_service import PaymentTransactionMachine

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class UnitOfWork:
    """Services bound to one session."""

    session: AsyncSession
    providers: Providers
    generator: BillingCycleGenerator
    seats: EmployeeLicenseService
    adjustments: AdjustmentEngine
    payments: PaymentTransactionMachine

    async def get_license(self, license_id: UUID) -> GlobalLicense:
        license_ = await self.session.get(GlobalLicense, license_id)
        if license_ is None:
            raise NotFound("License", license_id)
        return license_

    async def get_tenant(self, tenant_id: UUID) -> Tenant:
        tenant = await self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFound("Tenant", tenant_id)
        return tenant


class BillingEngine:
    """Entry point for state-changing billing operations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers_factory: ProvidersFactory = sql_providers,
        policy: BillingPolicy | None = None,
        locks: LicenseLocks | None = None,
    ):
        self.session_factory = session_factory
        self.providers_factory = providers_factory
        self.policy = policy or BillingPolicy()
        self.locks = locks or LicenseLocks()

    @asynccontextmanager
    async def unit_of_work(self, license_id: UUID) -> AsyncIterator[UnitOfWork]:
        async with self.locks.hold(license_id):
            async with self.session_factory() as session:
                try:
                    await lock_license(session, license_id)
                    providers = self.providers_factory(session)
                    yield UnitOfWork(
                        session=session,
                        providers=providers,
                        seats=EmployeeLicenseService(session, self.policy),
                        generator=BillingCycleGenerator(session, providers, self.policy),
                        adjustments=AdjustmentEngine(session, providers, self.policy),
                        payments=PaymentTransactionMachine(session, self.policy),
                    )
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    async def _run(
        self, license_id: UUID, operation: Callable[[UnitOfWork], Awaitable[T]]
    ) -> T:
        async with self.unit_of_work(license_id) as uow:
            return await operation(uow)

    # License activation

    async def activate_license(
        self, license_id: UUID, now: datetime | None = None
    ) -> GenerationResult:
        """Activate a license and generate its first billing cycle.

        Safe to call again: an already generated period is returned as is.
        A concurrent generator losing the unique (license, period) race is
        retried once and then observes the winner's cycle.
        """
        try:
            return await self._run(license_id, lambda uow: self._activate(uow, license_id, now))
        except IntegrityError:
            logger.warning("Billing cycle race for license %s, retrying", license_id)
            return await self._run(license_id, lambda uow: self._activate(uow, license_id, now))

    async def _activate(
        self, uow: UnitOfWork, license_id: UUID, now: datetime | None
    ) -> GenerationResult:
        license_ = await uow.get_license(license_id)
        if license_.status != LicenseStatus.ACTIVE:
            if license_.status != LicenseStatus.SUSPENDED:
                raise InvalidStateTransition(
                    license_.status, LicenseStatus.ACTIVE, "only suspended licenses reactivate"
                )
            other = await uow.session.execute(
                select(GlobalLicense.global_license_id).where(
                    GlobalLicense.tenant_id == license_.tenant_id,
                    GlobalLicense.status == LicenseStatus.ACTIVE.value,
                    GlobalLicense.global_license_id != license_id,
                )
            )
            if other.first() is not None:
                raise Conflict(f"Tenant {license_.tenant_id} already has an active license")
            license_.status = LicenseStatus.ACTIVE.value
            logger.info("License %s activated", license_id)

        tenant = await uow.get_tenant(license_.tenant_id)
        return await uow.generator.generate_initial_cycle(license_, tenant, now)

    # Seat state

    async def declare_long_leave(
        self,
        license_id: UUID,
        employee_code: str,
        declared_by: str,
        leave_type: LeaveType | str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> EmployeeLicense:
        """Declare long leave under the same license lock as growth detection."""

        async def operation(uow: UnitOfWork) -> EmployeeLicense:
            seat = await uow.seats.get_seat_by_code(license_id, employee_code)
            return await uow.seats.declare_long_leave(
                seat, declared_by, leave_type, reason, now=now
            )

        return await self._run(license_id, operation)

    async def cancel_long_leave(self, license_id: UUID, employee_code: str) -> EmployeeLicense:
        async def operation(uow: UnitOfWork) -> EmployeeLicense:
            seat = await uow.seats.get_seat_by_code(license_id, employee_code)
            return await uow.seats.cancel_long_leave(seat)

        return await self._run(license_id, operation)

    # Adjustments

    async def propose_adjustment(
        self, license_id: UUID, newly_added_seats: int, now: datetime | None = None
    ) -> LicenseAdjustment:
        async def operation(uow: UnitOfWork) -> LicenseAdjustment:
            license_ = await uow.get_license(license_id)
            return await uow.adjustments.propose_adjustment(license_, newly_added_seats, now)

        return await self._run(license_id, operation)

    async def detect_growth(
        self, license_id: UUID, now: datetime | None = None
    ) -> LicenseAdjustment | None:
        async def operation(uow: UnitOfWork) -> LicenseAdjustment | None:
            license_ = await uow.get_license(license_id)
            return await uow.adjustments.detect_growth(license_, now)

        return await self._run(license_id, operation)

    async def confirm_adjustment(
        self, adjustment_id: UUID, now: datetime | None = None
    ) -> LicenseAdjustment:
        license_id = await self._license_for_adjustment(adjustment_id)

        async def operation(uow: UnitOfWork) -> LicenseAdjustment:
            adjustment = await uow.adjustments.get_adjustment(adjustment_id)
            return await uow.adjustments.confirm_adjustment(adjustment, now)

        return await self._run(license_id, operation)

    # Payments

    async def initiate_payment(
        self,
        adjustment_id: UUID,
        payment_method_id: UUID | None = None,
        now: datetime | None = None,
    ) -> PaymentTransaction:
        """Open a payment for an adjustment against the license's latest cycle."""
        license_id = await self._license_for_adjustment(adjustment_id)

        async def operation(uow: UnitOfWork) -> PaymentTransaction:
            adjustment = await uow.adjustments.get_adjustment(adjustment_id)
            billing_cycle = await uow.generator.latest_cycle(license_id)
            if payment_method_id is not None:
                method = await uow.session.get(PaymentMethod, payment_method_id)
                if method is None:
                    raise NotFound("Payment method", payment_method_id)
            else:
                license_ = await uow.get_license(license_id)
                tenant = await uow.get_tenant(license_.tenant_id)
                method = await uow.providers.payment_methods.get_default_for_country(
                    tenant.country_code
                )
            return await uow.payments.initiate(billing_cycle, adjustment, method, now)

        return await self._run(license_id, operation)

    async def start_processing(
        self, transaction_id: UUID, now: datetime | None = None
    ) -> PaymentTransaction:
        return await self._transition(
            transaction_id, lambda uow, txn: uow.payments.start_processing(txn, now)
        )

    async def complete(
        self, transaction_id: UUID, now: datetime | None = None
    ) -> PaymentTransaction:
        return await self._transition(
            transaction_id, lambda uow, txn: uow.payments.complete(txn, now)
        )

    async def fail(
        self, transaction_id: UUID, reason: str, now: datetime | None = None
    ) -> PaymentTransaction:
        return await self._transition(
            transaction_id, lambda uow, txn: uow.payments.fail(txn, reason, now)
        )

    async def cancel(
        self, transaction_id: UUID, now: datetime | None = None
    ) -> PaymentTransaction:
        return await self._transition(
            transaction_id, lambda uow, txn: uow.payments.cancel(txn, now)
        )

    async def refund(
        self, transaction_id: UUID, now: datetime | None = None
    ) -> PaymentTransaction:
        return await self._transition(
            transaction_id, lambda uow, txn: uow.payments.refund(txn, now)
        )

    async def retry(
        self,
        transaction_id: UUID,
        payment_method_id: UUID | None = None,
        now: datetime | None = None,
    ) -> PaymentTransaction:
        async def operation(uow: UnitOfWork, txn: PaymentTransaction) -> PaymentTransaction:
            method = None
            if payment_method_id is not None:
                method = await uow.session.get(PaymentMethod, payment_method_id)
                if method is None:
                    raise NotFound("Payment method", payment_method_id)
            return await uow.payments.retry(txn, method, now)

        return await self._transition(transaction_id, operation)

    async def _transition(
        self,
        transaction_id: UUID,
        operation: Callable[[UnitOfWork, PaymentTransaction], Awaitable[PaymentTransaction]],
    ) -> PaymentTransaction:
        license_id = await self._license_for_transaction(transaction_id)

        async def run(uow: UnitOfWork) -> PaymentTransaction:
            txn = await uow.payments.get(transaction_id)
            return await operation(uow, txn)

        return await self._run(license_id, run)

    async def _license_for_adjustment(self, adjustment_id: UUID) -> UUID:
        async with self.session_factory() as session:
            license_id = await session.scalar(
                select(LicenseAdjustment.global_license_id).where(
                    LicenseAdjustment.license_adjustment_id == adjustment_id
                )
            )
        if license_id is None:
            raise NotFound("Adjustment", adjustment_id)
        return license_id

    async def _license_for_transaction(self, transaction_id: UUID) -> UUID:
        async with self.session_factory() as session:
            license_id = await session.scalar(
                select(LicenseAdjustment.global_license_id)
                .join(
                    PaymentTransaction,
                    PaymentTransaction.license_adjustment_id
                    == LicenseAdjustment.license_adjustment_id,
                )
                .where(PaymentTransaction.payment_transaction_id == transaction_id)
            )
        if license_id is None:
            raise NotFound("Payment transaction", transaction_id)
        return license_id
