"""Billing cycle, adjustment and payment transaction models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from license_billing.calculators.cost_calculator import local_total_consistent, round_money
from license_billing.calculators.types import (
    AdjustmentStatus,
    BillingStatus,
    TaxRuleSnapshot,
    TransactionStatus,
)
from license_billing.clock import utcnow
from license_billing.errors import InvalidStateTransition
from license_billing.models.base import MONEY, RATE, Base, TimestampMixin, enum_check

if TYPE_CHECKING:
    from license_billing.models.license import GlobalLicense
    from license_billing.models.reference import PaymentMethod

ZERO = Decimal("0")
LOCAL_AMOUNT_TOLERANCE = Decimal("0.01")


def _snapshots(raw: list[dict[str, Any]] | None) -> tuple[TaxRuleSnapshot, ...]:
    return tuple(TaxRuleSnapshot.from_dict(item) for item in raw or [])


class BillingCycle(Base, TimestampMixin):
    """Snapshot of one billing period of a license."""

    __tablename__ = "billing_cycle"

    billing_cycle_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    global_license_id: Mapped[UUID] = mapped_column(
        ForeignKey("global_license.global_license_id", ondelete="RESTRICT"),
        nullable=False,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    base_employee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    final_employee_count: Mapped[int] = mapped_column(Integer, nullable=False)

    base_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    adjustments_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=ZERO)
    tax_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    base_amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    adjustments_amount_local: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=ZERO
    )
    tax_amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    billing_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    tax_rules_applied: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    billing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingStatus.PENDING.value
    )
    payment_due_date: Mapped[date] = mapped_column(Date, nullable=False)
    invoiced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "global_license_id", "period_start", name="billing_cycle_one_per_period"
        ),
        CheckConstraint("period_end > period_start", name="billing_cycle_period_check"),
        enum_check("billing_status", BillingStatus, "billing_cycle_status_check"),
        CheckConstraint(
            "base_employee_count >= 0 AND final_employee_count >= 0",
            name="billing_cycle_counts_check",
        ),
    )

    # Relationships
    global_license: Mapped[GlobalLicense] = relationship(back_populates="billing_cycles")

    @property
    def tax_rules(self) -> tuple[TaxRuleSnapshot, ...]:
        return _snapshots(self.tax_rules_applied)

    @property
    def is_paid(self) -> bool:
        return self.billing_status == BillingStatus.PAID

    def is_local_total_consistent(self) -> bool:
        return local_total_consistent(
            self.base_amount_local + self.adjustments_amount_local,
            self.tax_amount_local,
            self.total_amount_local,
        )

    def mark_invoiced(self, at: datetime | None = None) -> None:
        """PENDING -> INVOICED."""
        if self.billing_status != BillingStatus.PENDING:
            raise InvalidStateTransition(self.billing_status, BillingStatus.INVOICED)
        self.billing_status = BillingStatus.INVOICED.value
        self.invoiced_at = at or utcnow()

    def mark_overdue(self, today: date | None = None) -> None:
        """PENDING or INVOICED -> OVERDUE once the due date has passed."""
        today = today or utcnow().date()
        if self.billing_status not in (BillingStatus.PENDING, BillingStatus.INVOICED):
            raise InvalidStateTransition(self.billing_status, BillingStatus.OVERDUE)
        if today <= self.payment_due_date:
            raise InvalidStateTransition(
                self.billing_status,
                BillingStatus.OVERDUE,
                reason=f"payment is not due until {self.payment_due_date.isoformat()}",
            )
        self.billing_status = BillingStatus.OVERDUE.value


class LicenseAdjustment(Base, TimestampMixin):
    """A prorated mid-period charge for added seats.

    The baseline adjustment created with the first billing cycle has
    ``is_baseline`` set and zero amounts.
    """

    __tablename__ = "license_adjustment"

    license_adjustment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    global_license_id: Mapped[UUID] = mapped_column(
        ForeignKey("global_license.global_license_id", ondelete="RESTRICT"),
        nullable=False,
    )
    adjustment_date: Mapped[datetime] = mapped_column(nullable=False)
    employees_added_count: Mapped[int] = mapped_column(Integer, nullable=False)
    months_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_employee_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    subtotal_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    subtotal_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    tax_amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    total_amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    billing_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    tax_rules_applied: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    # One entry per merged addition, priced when it was proposed
    proration_lines: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )

    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AdjustmentStatus.PENDING.value
    )
    payment_due_immediately: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_baseline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    invoice_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payment_completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        enum_check("payment_status", AdjustmentStatus, "license_adjustment_status_check"),
        CheckConstraint(
            "employees_added_count >= 0 AND months_remaining >= 0",
            name="license_adjustment_counts_check",
        ),
        # At most one open (pending, not yet invoiced) adjustment per license
        Index(
            "uq_license_adjustment_one_open",
            "global_license_id",
            unique=True,
            postgresql_where=text(
                "payment_status = 'pending' AND invoice_sent_at IS NULL AND NOT is_baseline"
            ),
            sqlite_where=text(
                "payment_status = 'pending' AND invoice_sent_at IS NULL AND NOT is_baseline"
            ),
        ),
    )

    # Relationships
    global_license: Mapped[GlobalLicense] = relationship(back_populates="adjustments")

    @property
    def tax_rules(self) -> tuple[TaxRuleSnapshot, ...]:
        return _snapshots(self.tax_rules_applied)

    @property
    def is_open(self) -> bool:
        """Pending and not yet invoiced, so new seats merge into it."""
        return (
            self.payment_status == AdjustmentStatus.PENDING
            and self.invoice_sent_at is None
            and not self.is_baseline
        )

    @property
    def calculation_breakdown(self) -> str:
        """Each addition as ``n employees × $price × m months``, joined by ``+``."""
        lines = self.proration_lines or [
            {
                "employees": self.employees_added_count,
                "price_usd": str(self.price_per_employee_usd),
                "months": self.months_remaining,
            }
        ]
        return " + ".join(
            f"{line['employees']} employees × ${line['price_usd']} × {line['months']} months"
            for line in lines
        )

    def is_local_total_consistent(self) -> bool:
        return local_total_consistent(
            self.subtotal_local, self.tax_amount_local, self.total_amount_local
        )


class PaymentTransaction(Base, TimestampMixin):
    """One payment attempt for a billing cycle and adjustment pair."""

    __tablename__ = "payment_transaction"

    payment_transaction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    billing_cycle_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_cycle.billing_cycle_id", ondelete="RESTRICT"),
        nullable=False,
    )
    license_adjustment_id: Mapped[UUID] = mapped_column(
        ForeignKey("license_adjustment.license_adjustment_id", ondelete="RESTRICT"),
        nullable=False,
    )
    payment_method_id: Mapped[UUID] = mapped_column(
        ForeignKey("payment_method.payment_method_id", ondelete="RESTRICT"),
        nullable=False,
    )
    supersedes_transaction_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payment_transaction.payment_transaction_id", ondelete="RESTRICT"),
        nullable=True,
    )

    amount_usd: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    amount_local: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(RATE, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TransactionStatus.PENDING.value
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    initiated_at: Mapped[datetime] = mapped_column(nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        enum_check("status", TransactionStatus, "payment_transaction_status_check"),
        CheckConstraint(
            "amount_usd >= 0 AND amount_local >= 0",
            name="payment_transaction_amount_check",
        ),
        CheckConstraint(
            "status <> 'failed' OR failure_reason IS NOT NULL",
            name="payment_transaction_failure_reason_check",
        ),
        Index(
            "ix_payment_transaction_target",
            "billing_cycle_id",
            "license_adjustment_id",
        ),
    )

    # Relationships
    billing_cycle: Mapped[BillingCycle] = relationship()
    adjustment: Mapped[LicenseAdjustment] = relationship()
    payment_method: Mapped[PaymentMethod] = relationship()

    def expected_local_amount(self) -> Decimal:
        return round_money(self.amount_usd * self.exchange_rate)

    def is_local_amount_consistent(self) -> bool:
        """Local amount agrees with USD x rate within one cent."""
        return abs(self.expected_local_amount() - self.amount_local) <= LOCAL_AMOUNT_TOLERANCE
