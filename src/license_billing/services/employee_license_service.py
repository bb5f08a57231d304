"""Seat lifecycle: activity, leave, grace windows and billable counts."""

from __future__ import annotations

import logging
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from license_billing.calculators.classifier import (
    classification_filter,
    classify,
    count_billable,
    has_recent_activity,
)
from license_billing.calculators.types import (
    BillingClassification,
    ContractualStatus,
    LeaveType,
)
from license_billing.clock import as_utc, utcnow
from license_billing.config import BillingPolicy
from license_billing.errors import AntiFraudRejected, Conflict, NotFound, ValidationFailed
from license_billing.models import MAX_LEAVE_REASON_LENGTH, EmployeeLicense, GlobalLicense

logger = logging.getLogger(__name__)


class EmployeeLicenseService:
    """Service for employee seats under a global license.

    Seats are never deleted; termination is the soft delete. The billing
    classification of a seat is always derived, never written.
    """

    def __init__(self, session: AsyncSession, policy: BillingPolicy | None = None):
        self.session = session
        self.policy = policy or BillingPolicy()

    async def get_license(self, license_id: UUID) -> GlobalLicense:
        license_ = await self.session.get(GlobalLicense, license_id)
        if license_ is None:
            raise NotFound("License", license_id)
        return license_

    async def get_seat(self, seat_id: UUID) -> EmployeeLicense:
        seat = await self.session.get(EmployeeLicense, seat_id)
        if seat is None:
            raise NotFound("Employee license", seat_id)
        return seat

    async def get_seat_by_code(self, license_id: UUID, employee_code: str) -> EmployeeLicense:
        result = await self.session.execute(
            select(EmployeeLicense).where(
                EmployeeLicense.global_license_id == license_id,
                EmployeeLicense.employee_code == employee_code,
            )
        )
        seat = result.scalar_one_or_none()
        if seat is None:
            raise NotFound("Employee license", employee_code)
        return seat

    async def list_seats(self, license_id: UUID) -> list[EmployeeLicense]:
        result = await self.session.execute(
            select(EmployeeLicense)
            .where(EmployeeLicense.global_license_id == license_id)
            .order_by(EmployeeLicense.employee_code)
        )
        return list(result.scalars().all())

    async def add_seat(
        self,
        license_: GlobalLicense,
        employee_code: str,
        activation_date: date | None = None,
        employee_name: str | None = None,
        last_activity_date: datetime | None = None,
    ) -> EmployeeLicense:
        """Onboard an employee onto the license."""
        if not employee_code:
            raise ValidationFailed("employee_code is required", field="employee_code")

        existing = await self.session.execute(
            select(EmployeeLicense.employee_license_id).where(
                EmployeeLicense.global_license_id == license_.global_license_id,
                EmployeeLicense.employee_code == employee_code,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise Conflict(f"Employee '{employee_code}' already holds a seat on this license")

        seat = EmployeeLicense(
            global_license_id=license_.global_license_id,
            employee_code=employee_code,
            employee_name=employee_name,
            activation_date=activation_date or utcnow().date(),
            last_activity_date=as_utc(last_activity_date) if last_activity_date else None,
            contractual_status=ContractualStatus.ACTIVE.value,
            declared_long_leave=False,
        )
        self.session.add(seat)
        await self.session.flush()
        await self.refresh_seat_count(license_)
        logger.info("Seat %s added to license %s", employee_code, license_.global_license_id)
        return seat

    async def record_activity(
        self, seat: EmployeeLicense, at: datetime | None = None
    ) -> EmployeeLicense:
        seat.last_activity_date = as_utc(at) if at else utcnow()
        await self.session.flush()
        return seat

    async def declare_long_leave(
        self,
        seat: EmployeeLicense,
        declared_by: str,
        leave_type: LeaveType | str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> EmployeeLicense:
        """Mark a seat as on declared long leave.

        Raises:
            ValidationFailed: declarer missing, unknown leave type, reason too long
            AntiFraudRejected: the seat has activity inside the anti-fraud window
            Conflict: the seat is terminated or already on leave
        """
        now = as_utc(now) if now else utcnow()

        if not declared_by or not declared_by.strip():
            raise ValidationFailed("declared_by is required", field="declared_by")
        try:
            leave = LeaveType(str(getattr(leave_type, "value", leave_type)).lower())
        except ValueError:
            raise ValidationFailed(
                f"Unknown leave type '{leave_type}'", field="leave_type"
            ) from None
        if reason is not None and len(reason) > MAX_LEAVE_REASON_LENGTH:
            raise ValidationFailed(
                f"reason exceeds {MAX_LEAVE_REASON_LENGTH} characters", field="reason"
            )
        if seat.is_terminated:
            raise Conflict(f"Employee '{seat.employee_code}' is terminated")
        if seat.declared_long_leave:
            raise Conflict(f"Employee '{seat.employee_code}' is already on long leave")

        window = self.policy.anti_fraud_window_days
        if has_recent_activity(seat.last_activity_date, now, window):
            logger.warning(
                "Long leave rejected for %s: last activity %s is within %d days",
                seat.employee_code,
                seat.last_activity_date,
                window,
            )
            raise AntiFraudRejected(seat.employee_code, seat.last_activity_date, window)

        seat.declared_long_leave = True
        seat.long_leave_declared_by = declared_by.strip()
        seat.long_leave_declared_at = now
        seat.long_leave_type = leave.value
        seat.long_leave_reason = reason
        await self.session.flush()

        logger.info("Long leave (%s) declared for %s", leave.value, seat.employee_code)
        return seat

    async def cancel_long_leave(self, seat: EmployeeLicense) -> EmployeeLicense:
        if not seat.declared_long_leave:
            raise Conflict(f"Employee '{seat.employee_code}' is not on long leave")

        seat.declared_long_leave = False
        seat.long_leave_declared_by = None
        seat.long_leave_declared_at = None
        seat.long_leave_type = None
        seat.long_leave_reason = None
        await self.session.flush()

        logger.info("Long leave cancelled for %s", seat.employee_code)
        return seat

    async def suspend(self, seat: EmployeeLicense) -> EmployeeLicense:
        if seat.contractual_status != ContractualStatus.ACTIVE:
            raise Conflict(f"Employee '{seat.employee_code}' is not active")
        seat.contractual_status = ContractualStatus.SUSPENDED.value
        await self.session.flush()
        return seat

    async def deactivate(self, seat: EmployeeLicense, at: date | None = None) -> EmployeeLicense:
        """Terminate a seat (soft delete)."""
        at = at or utcnow().date()
        if at <= seat.activation_date:
            raise ValidationFailed(
                "deactivation_date must be after activation_date", field="deactivation_date"
            )
        if seat.is_terminated:
            raise Conflict(f"Employee '{seat.employee_code}' is already terminated")

        seat.contractual_status = ContractualStatus.TERMINATED.value
        seat.deactivation_date = at
        await self.session.flush()
        await self._refresh_for(seat)

        logger.info("Seat %s deactivated", seat.employee_code)
        return seat

    async def reactivate(self, seat: EmployeeLicense) -> EmployeeLicense:
        if seat.contractual_status == ContractualStatus.ACTIVE:
            raise Conflict(f"Employee '{seat.employee_code}' is already active")

        seat.contractual_status = ContractualStatus.ACTIVE.value
        seat.deactivation_date = None
        await self.session.flush()
        await self._refresh_for(seat)

        logger.info("Seat %s reactivated", seat.employee_code)
        return seat

    async def open_grace_period(
        self, seat: EmployeeLicense, start: datetime, end: datetime
    ) -> EmployeeLicense:
        start, end = as_utc(start), as_utc(end)
        if end <= start:
            raise ValidationFailed(
                "grace_period_end must be after grace_period_start", field="grace_period_end"
            )
        seat.grace_period_start = start
        seat.grace_period_end = end
        await self.session.flush()
        return seat

    async def close_grace_period(self, seat: EmployeeLicense) -> EmployeeLicense:
        seat.grace_period_start = None
        seat.grace_period_end = None
        await self.session.flush()
        return seat

    async def count_billable(self, license_id: UUID, now: datetime | None = None) -> int:
        """Live billable headcount (BILLABLE plus GRACE_PERIOD)."""
        seats = await self.list_seats(license_id)
        return count_billable(seats, as_utc(now) if now else utcnow())

    async def billing_stats(
        self, license_id: UUID, now: datetime | None = None
    ) -> dict[str, int]:
        """Seat counts per classification."""
        now = as_utc(now) if now else utcnow()
        stats = {c.value: 0 for c in BillingClassification}
        seats = await self.list_seats(license_id)
        for seat in seats:
            stats[classify(seat, now).value] += 1
        stats["total"] = len(seats)
        stats["billable_total"] = (
            stats[BillingClassification.BILLABLE.value]
            + stats[BillingClassification.GRACE_PERIOD.value]
        )
        return stats

    async def list_by_classification(
        self,
        license_id: UUID,
        classification: BillingClassification | str,
        now: datetime | None = None,
    ) -> list[EmployeeLicense]:
        """Seats with the given classification, filtered in SQL."""
        now = as_utc(now) if now else utcnow()
        try:
            wanted = BillingClassification(classification)
        except ValueError:
            raise ValidationFailed(
                f"Unknown classification '{classification}'", field="classification"
            ) from None

        result = await self.session.execute(
            select(EmployeeLicense)
            .where(
                EmployeeLicense.global_license_id == license_id,
                classification_filter(EmployeeLicense, wanted, now),
            )
            .order_by(EmployeeLicense.employee_code)
        )
        return list(result.scalars().all())

    async def refresh_seat_count(self, license_: GlobalLicense) -> int:
        """Recompute the license's purchased seats from non-terminated seats."""
        result = await self.session.execute(
            select(func.count())
            .select_from(EmployeeLicense)
            .where(
                EmployeeLicense.global_license_id == license_.global_license_id,
                EmployeeLicense.contractual_status != ContractualStatus.TERMINATED.value,
            )
        )
        count = int(result.scalar_one())
        license_._total_seats_purchased = count
        await self.session.flush()
        return count

    async def _refresh_for(self, seat: EmployeeLicense) -> None:
        license_ = await self.get_license(seat.global_license_id)
        await self.refresh_seat_count(license_)
