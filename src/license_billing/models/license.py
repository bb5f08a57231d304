"""Tenant, license and seat models."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from license_billing.calculators.classifier import classify
from license_billing.calculators.types import (
    BillingClassification,
    ContractualStatus,
    LicenseStatus,
)
from license_billing.clock import utcnow
from license_billing.models.base import MONEY, Base, TimestampMixin, enum_check

if TYPE_CHECKING:
    from license_billing.models.billing import BillingCycle, LicenseAdjustment

ALLOWED_BILLING_CYCLE_MONTHS = (1, 3, 6, 12)
DEFAULT_MINIMUM_SEATS = 5
DEFAULT_BASE_PRICE_USD = Decimal("3.00")
MAX_LEAVE_REASON_LENGTH = 500


class Tenant(Base, TimestampMixin):
    """A customer organization. Satisfies the TenantInfo protocol."""

    __tablename__ = "tenant"

    tenant_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    billing_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_email: Mapped[str | None] = mapped_column(String(254), nullable=True)

    licenses: Mapped[list[GlobalLicense]] = relationship(back_populates="tenant")


class GlobalLicense(Base, TimestampMixin):
    """The subscription contract of one tenant."""

    __tablename__ = "global_license"

    global_license_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tenant_id: Mapped[UUID] = mapped_column(
        ForeignKey("tenant.tenant_id", ondelete="RESTRICT"),
        nullable=False,
    )
    license_type: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    billing_cycle_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    base_price_usd: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=DEFAULT_BASE_PRICE_USD
    )
    minimum_seats: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_MINIMUM_SEATS
    )
    current_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    current_period_end: Mapped[date] = mapped_column(Date, nullable=False)
    next_renewal_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=LicenseStatus.ACTIVE.value
    )
    # Derived from seats; written only by EmployeeLicenseService.refresh_seat_count
    _total_seats_purchased: Mapped[int] = mapped_column(
        "total_seats_purchased", Integer, nullable=False, default=0
    )
    # NULL until the initial billing cascade has been committed
    billing_generated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start",
            name="global_license_period_check",
        ),
        CheckConstraint(
            "billing_cycle_months IN (1, 3, 6, 12)",
            name="global_license_cycle_months_check",
        ),
        CheckConstraint("minimum_seats >= 0", name="global_license_min_seats_check"),
        CheckConstraint("base_price_usd >= 0", name="global_license_price_check"),
        enum_check("status", LicenseStatus, "global_license_status_check"),
        Index(
            "uq_global_license_one_active_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    # Relationships
    tenant: Mapped[Tenant] = relationship(back_populates="licenses")
    seats: Mapped[list[EmployeeLicense]] = relationship(back_populates="global_license")
    billing_cycles: Mapped[list[BillingCycle]] = relationship(back_populates="global_license")
    adjustments: Mapped[list[LicenseAdjustment]] = relationship(
        back_populates="global_license"
    )

    @property
    def total_seats_purchased(self) -> int:
        return self._total_seats_purchased

    @property
    def seats_to_charge(self) -> int:
        """Seats the base cost is charged for."""
        return max(self.total_seats_purchased, self.minimum_seats)

    @property
    def is_active(self) -> bool:
        return self.status == LicenseStatus.ACTIVE

    @property
    def billing_generated(self) -> bool:
        return self.billing_generated_at is not None

    def days_remaining(self, today: date | None = None) -> int:
        """Days until the current period ends (never negative)."""
        today = today or utcnow().date()
        return max((self.current_period_end - today).days, 0)

    def is_expiring_soon(self, days: int = 30, today: date | None = None) -> bool:
        today = today or utcnow().date()
        return today <= self.current_period_end <= today + timedelta(days=days)


class EmployeeLicense(Base, TimestampMixin):
    """One employee's seat under a global license.

    The billing classification is derived on read (see ``classification``);
    there is no stored column for it.
    """

    __tablename__ = "employee_license"

    employee_license_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    global_license_id: Mapped[UUID] = mapped_column(
        ForeignKey("global_license.global_license_id", ondelete="RESTRICT"),
        nullable=False,
    )
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False)
    employee_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    activation_date: Mapped[date] = mapped_column(Date, nullable=False)
    deactivation_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_activity_date: Mapped[datetime | None] = mapped_column(nullable=True)
    contractual_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ContractualStatus.ACTIVE.value
    )

    # Long leave
    declared_long_leave: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    long_leave_declared_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    long_leave_declared_at: Mapped[datetime | None] = mapped_column(nullable=True)
    long_leave_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    long_leave_reason: Mapped[str | None] = mapped_column(
        String(MAX_LEAVE_REASON_LENGTH), nullable=True
    )

    # Grace window
    grace_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "global_license_id", "employee_code", name="employee_license_code_uq"
        ),
        enum_check("contractual_status", ContractualStatus, "employee_license_status_check"),
        CheckConstraint(
            "deactivation_date IS NULL OR deactivation_date > activation_date",
            name="employee_license_deactivation_check",
        ),
        CheckConstraint(
            "grace_period_start IS NULL OR grace_period_end IS NULL "
            "OR grace_period_end > grace_period_start",
            name="employee_license_grace_check",
        ),
        CheckConstraint(
            "NOT declared_long_leave OR "
            "(long_leave_declared_by IS NOT NULL AND long_leave_declared_at IS NOT NULL)",
            name="employee_license_leave_declarer_check",
        ),
        Index("ix_employee_license_license_status", "global_license_id", "contractual_status"),
    )

    # Relationships
    global_license: Mapped[GlobalLicense] = relationship(back_populates="seats")

    def classification(self, now: datetime | None = None) -> BillingClassification:
        return classify(self, now or utcnow())

    @property
    def is_terminated(self) -> bool:
        return self.contractual_status == ContractualStatus.TERMINATED
