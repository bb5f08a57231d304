"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from license_billing.models import MAX_LEAVE_REASON_LENGTH


# ============================================================================
# Errors
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None


# ============================================================================
# Cost preview schemas
# ============================================================================


class CostPreviewResponse(BaseModel):
    """Current cost of the tenant's active license."""

    model_config = ConfigDict(from_attributes=True)

    base_cost_usd: Decimal
    adjustments_usd: Decimal
    tax_amount_usd: Decimal
    total_usd: Decimal
    exchange_rate: Decimal
    total_local: Decimal
    currency: str


class TaxRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    rate: Decimal


class PeriodResponse(BaseModel):
    start: date
    end: date


class PeriodBreakdownResponse(BaseModel):
    base_price_per_employee: Decimal
    billing_cycle_months: int
    minimum_seats: int
    tax_rules_applied: list[TaxRuleResponse]


class PeriodPreviewResponse(BaseModel):
    """Cost preview with the period and pricing behind it."""

    period: PeriodResponse
    current_billable_employees: int
    projected_costs: CostPreviewResponse
    breakdown: PeriodBreakdownResponse


# ============================================================================
# Seat schemas
# ============================================================================


class SeatResponse(BaseModel):
    """An employee seat with its derived classification."""

    model_config = ConfigDict(from_attributes=True)

    employee_license_id: UUID
    employee_code: str
    employee_name: str | None = None
    contractual_status: str
    billing_classification: str
    declared_long_leave: bool
    long_leave_type: str | None = None
    long_leave_declared_by: str | None = None
    long_leave_declared_at: datetime | None = None
    grace_period_start: datetime | None = None
    grace_period_end: datetime | None = None
    last_activity_date: datetime | None = None
    activation_date: date
    deactivation_date: date | None = None


class BillableEmployeesResponse(BaseModel):
    """Seats of the active license grouped by classification."""

    stats: dict[str, int]
    items: list[SeatResponse]


class LongLeaveRequest(BaseModel):
    """Schema for declaring long leave."""

    declared_by: str = Field(min_length=1)
    leave_type: str
    reason: str | None = Field(default=None, max_length=MAX_LEAVE_REASON_LENGTH)


# ============================================================================
# Adjustment schemas
# ============================================================================


class ProrationLineResponse(BaseModel):
    """One addition merged into an adjustment."""

    employees: int
    price_usd: Decimal
    months: int
    subtotal_usd: Decimal
    proposed_at: datetime


class AdjustmentResponse(BaseModel):
    """Schema for license adjustment response."""

    model_config = ConfigDict(from_attributes=True)

    license_adjustment_id: UUID
    global_license_id: UUID
    adjustment_date: datetime
    employees_added_count: int
    months_remaining: int
    price_per_employee_usd: Decimal
    subtotal_usd: Decimal
    tax_amount_usd: Decimal
    total_amount_usd: Decimal
    subtotal_local: Decimal
    tax_amount_local: Decimal
    total_amount_local: Decimal
    billing_currency: str
    exchange_rate: Decimal
    tax_rules_applied: list[TaxRuleResponse]
    proration_lines: list[ProrationLineResponse] = []
    payment_status: str
    payment_due_immediately: bool
    is_baseline: bool
    invoice_sent_at: datetime | None = None
    payment_completed_at: datetime | None = None
    calculation_breakdown: str


class PendingAdjustmentsResponse(BaseModel):
    items: list[AdjustmentResponse]
    total_pending_usd: Decimal


# ============================================================================
# Payment schemas
# ============================================================================


class PaymentTransactionResponse(BaseModel):
    """Schema for payment transaction response."""

    model_config = ConfigDict(from_attributes=True)

    payment_transaction_id: UUID
    billing_cycle_id: UUID
    license_adjustment_id: UUID
    payment_method_id: UUID
    supersedes_transaction_id: UUID | None = None
    amount_usd: Decimal
    amount_local: Decimal
    currency: str
    exchange_rate: Decimal
    payment_reference: str
    status: str
    failure_reason: str | None = None
    initiated_at: datetime
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None


class PaymentInitiateRequest(BaseModel):
    license_adjustment_id: UUID
    payment_method_id: UUID | None = None


class PaymentRetryRequest(BaseModel):
    payment_method_id: UUID | None = None


class PaymentTransitionRequest(BaseModel):
    """Schema for moving a payment through its lifecycle."""

    action: Literal["start_processing", "complete", "fail", "cancel", "refund"]
    reason: str | None = None
