"""License billing API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from license_billing.api.dependencies import DbSession, Engine, Policy, ProvidersDep, TenantId
from license_billing.api.schemas import (
    AdjustmentResponse,
    BillableEmployeesResponse,
    CostPreviewResponse,
    ErrorResponse,
    LongLeaveRequest,
    PaymentInitiateRequest,
    PaymentRetryRequest,
    PaymentTransactionResponse,
    PaymentTransitionRequest,
    PendingAdjustmentsResponse,
    PeriodPreviewResponse,
    SeatResponse,
)
from license_billing.calculators.types import BillingClassification, LicenseStatus
from license_billing.clock import utcnow
from license_billing.engine import BillingEngine
from license_billing.errors import NotFound, ValidationFailed
from license_billing.models import (
    EmployeeLicense,
    GlobalLicense,
    LicenseAdjustment,
    PaymentTransaction,
)
from license_billing.services.adjustment_service import AdjustmentEngine
from license_billing.services.cost_preview_service import CostPreviewService
from license_billing.services.employee_license_service import EmployeeLicenseService
from license_billing.services.payment_service import PaymentTransactionMachine

router = APIRouter(prefix="/billing", tags=["billing"])

NOT_FOUND = {404: {"model": ErrorResponse}}
STATE_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


async def _active_license(db: AsyncSession, tenant_id: UUID) -> GlobalLicense:
    result = await db.execute(
        select(GlobalLicense).where(
            GlobalLicense.tenant_id == tenant_id,
            GlobalLicense.status == LicenseStatus.ACTIVE.value,
        )
    )
    license_ = result.scalar_one_or_none()
    if license_ is None:
        raise NotFound("Active license for tenant", tenant_id)
    return license_


async def _owned_adjustment(
    db: AsyncSession, tenant_id: UUID, adjustment_id: UUID
) -> LicenseAdjustment:
    result = await db.execute(
        select(LicenseAdjustment)
        .join(
            GlobalLicense,
            GlobalLicense.global_license_id == LicenseAdjustment.global_license_id,
        )
        .where(
            LicenseAdjustment.license_adjustment_id == adjustment_id,
            GlobalLicense.tenant_id == tenant_id,
        )
    )
    adjustment = result.scalar_one_or_none()
    if adjustment is None:
        raise NotFound("Adjustment", adjustment_id)
    return adjustment


async def _owned_transaction(
    db: AsyncSession, tenant_id: UUID, criterion: ColumnElement[bool], identifier: object
) -> PaymentTransaction:
    query = (
        select(PaymentTransaction)
        .join(
            LicenseAdjustment,
            LicenseAdjustment.license_adjustment_id == PaymentTransaction.license_adjustment_id,
        )
        .join(
            GlobalLicense,
            GlobalLicense.global_license_id == LicenseAdjustment.global_license_id,
        )
        .where(GlobalLicense.tenant_id == tenant_id, criterion)
    )
    txn = (await db.execute(query)).scalar_one_or_none()
    if txn is None:
        raise NotFound("Payment transaction", identifier)
    return txn


async def _check_adjustment_owner(
    engine: BillingEngine, tenant_id: UUID, adjustment_id: UUID
) -> None:
    async with engine.session_factory() as session:
        await _owned_adjustment(session, tenant_id, adjustment_id)


async def _check_transaction_owner(
    engine: BillingEngine, tenant_id: UUID, transaction_id: UUID
) -> None:
    async with engine.session_factory() as session:
        await _owned_transaction(
            session,
            tenant_id,
            PaymentTransaction.payment_transaction_id == transaction_id,
            transaction_id,
        )


def _seat_response(seat: EmployeeLicense) -> SeatResponse:
    now = utcnow()
    return SeatResponse.model_validate(
        {**seat.to_dict(), "billing_classification": seat.classification(now).value}
    )


# ============================================================================
# Cost preview
# ============================================================================


@router.get("/current-cost", response_model=CostPreviewResponse, responses=NOT_FOUND)
async def current_cost(
    db: DbSession, tenant_id: TenantId, providers: ProvidersDep, policy: Policy
) -> CostPreviewResponse:
    """What the tenant would owe for the current period right now."""
    preview = await CostPreviewService(db, providers, policy).current_cost(tenant_id)
    return CostPreviewResponse.model_validate(preview)


@router.get("/period-preview", response_model=PeriodPreviewResponse, responses=NOT_FOUND)
async def period_preview(
    db: DbSession, tenant_id: TenantId, providers: ProvidersDep, policy: Policy
) -> PeriodPreviewResponse:
    preview = await CostPreviewService(db, providers, policy).period_preview(tenant_id)
    return PeriodPreviewResponse.model_validate(preview.to_dict())


# ============================================================================
# Seats
# ============================================================================


@router.get(
    "/billable-employees", response_model=BillableEmployeesResponse, responses=NOT_FOUND
)
async def billable_employees(
    db: DbSession,
    tenant_id: TenantId,
    policy: Policy,
    classification: Annotated[BillingClassification | None, Query()] = None,
) -> BillableEmployeesResponse:
    """Seats of the active license, optionally filtered by classification."""
    license_ = await _active_license(db, tenant_id)
    service = EmployeeLicenseService(db, policy)
    now = utcnow()

    if classification is None:
        seats = await service.list_seats(license_.global_license_id)
    else:
        seats = await service.list_by_classification(
            license_.global_license_id, classification, now
        )
    stats = await service.billing_stats(license_.global_license_id, now)
    return BillableEmployeesResponse(
        stats=stats, items=[_seat_response(seat) for seat in seats]
    )


@router.post(
    "/employees/{employee_code}/long-leave",
    response_model=SeatResponse,
    responses={**STATE_ERRORS, 422: {"model": ErrorResponse}},
)
async def declare_long_leave(
    engine: Engine,
    tenant_id: TenantId,
    payload: LongLeaveRequest,
    employee_code: Annotated[str, Path()],
) -> SeatResponse:
    """Declare long leave for an employee. Rejected if they were recently active."""
    async with engine.session_factory() as session:
        license_ = await _active_license(session, tenant_id)
    seat = await engine.declare_long_leave(
        license_.global_license_id,
        employee_code,
        payload.declared_by,
        payload.leave_type,
        payload.reason,
    )
    return _seat_response(seat)


@router.delete(
    "/employees/{employee_code}/long-leave",
    response_model=SeatResponse,
    responses=STATE_ERRORS,
)
async def cancel_long_leave(
    engine: Engine,
    tenant_id: TenantId,
    employee_code: Annotated[str, Path()],
) -> SeatResponse:
    async with engine.session_factory() as session:
        license_ = await _active_license(session, tenant_id)
    seat = await engine.cancel_long_leave(license_.global_license_id, employee_code)
    return _seat_response(seat)


# ============================================================================
# Adjustments
# ============================================================================


@router.get(
    "/pending-adjustments", response_model=PendingAdjustmentsResponse, responses=NOT_FOUND
)
async def pending_adjustments(
    db: DbSession, tenant_id: TenantId, providers: ProvidersDep, policy: Policy
) -> PendingAdjustmentsResponse:
    """Invoiced adjustments not yet paid."""
    license_ = await _active_license(db, tenant_id)
    pending = await AdjustmentEngine(db, providers, policy).pending_adjustments(
        license_.global_license_id
    )
    return PendingAdjustmentsResponse(
        items=[AdjustmentResponse.model_validate(a) for a in pending.adjustments],
        total_pending_usd=pending.total_pending_usd,
    )


@router.post(
    "/adjustments/detect",
    response_model=AdjustmentResponse | None,
    responses=STATE_ERRORS,
)
async def detect_growth(engine: Engine, tenant_id: TenantId) -> AdjustmentResponse | None:
    """Propose an adjustment if billable seats grew since the last charge."""
    async with engine.session_factory() as session:
        license_ = await _active_license(session, tenant_id)
    adjustment = await engine.detect_growth(license_.global_license_id)
    if adjustment is None:
        return None
    return AdjustmentResponse.model_validate(adjustment)


@router.get(
    "/adjustments/{adjustment_id}", response_model=AdjustmentResponse, responses=NOT_FOUND
)
async def get_adjustment(
    db: DbSession, tenant_id: TenantId, adjustment_id: Annotated[UUID, Path()]
) -> AdjustmentResponse:
    adjustment = await _owned_adjustment(db, tenant_id, adjustment_id)
    return AdjustmentResponse.model_validate(adjustment)


@router.post(
    "/adjustments/{adjustment_id}/confirm",
    response_model=AdjustmentResponse,
    responses=STATE_ERRORS,
)
async def confirm_adjustment(
    engine: Engine, tenant_id: TenantId, adjustment_id: Annotated[UUID, Path()]
) -> AdjustmentResponse:
    """Mark an adjustment as invoiced."""
    await _check_adjustment_owner(engine, tenant_id, adjustment_id)
    adjustment = await engine.confirm_adjustment(adjustment_id)
    return AdjustmentResponse.model_validate(adjustment)


# ============================================================================
# Payments
# ============================================================================


@router.post(
    "/payments",
    response_model=PaymentTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**STATE_ERRORS, 424: {"model": ErrorResponse}},
)
async def initiate_payment(
    engine: Engine, tenant_id: TenantId, payload: PaymentInitiateRequest
) -> PaymentTransactionResponse:
    await _check_adjustment_owner(engine, tenant_id, payload.license_adjustment_id)
    txn = await engine.initiate_payment(
        payload.license_adjustment_id, payload.payment_method_id
    )
    return PaymentTransactionResponse.model_validate(txn)


@router.get("/payments/history", response_model=list[PaymentTransactionResponse])
async def payment_history(
    db: DbSession, tenant_id: TenantId, policy: Policy
) -> list[PaymentTransactionResponse]:
    license_ = await _active_license(db, tenant_id)
    transactions = await PaymentTransactionMachine(db, policy).payment_history(
        license_.global_license_id
    )
    return [PaymentTransactionResponse.model_validate(t) for t in transactions]


@router.get(
    "/payments/{payment_reference}",
    response_model=PaymentTransactionResponse,
    responses=NOT_FOUND,
)
async def payment_status(
    db: DbSession, tenant_id: TenantId, payment_reference: Annotated[str, Path()]
) -> PaymentTransactionResponse:
    txn = await _owned_transaction(
        db,
        tenant_id,
        PaymentTransaction.payment_reference == payment_reference,
        payment_reference,
    )
    return PaymentTransactionResponse.model_validate(txn)


@router.post(
    "/payments/{transaction_id}/transitions",
    response_model=PaymentTransactionResponse,
    responses=STATE_ERRORS,
)
async def transition_payment(
    engine: Engine,
    tenant_id: TenantId,
    payload: PaymentTransitionRequest,
    transaction_id: Annotated[UUID, Path()],
) -> PaymentTransactionResponse:
    """Move a payment through its lifecycle."""
    await _check_transaction_owner(engine, tenant_id, transaction_id)

    if payload.action == "start_processing":
        txn = await engine.start_processing(transaction_id)
    elif payload.action == "complete":
        txn = await engine.complete(transaction_id)
    elif payload.action == "fail":
        if not payload.reason:
            raise ValidationFailed("A failure reason is required", field="reason")
        txn = await engine.fail(transaction_id, payload.reason)
    elif payload.action == "cancel":
        txn = await engine.cancel(transaction_id)
    else:
        txn = await engine.refund(transaction_id)
    return PaymentTransactionResponse.model_validate(txn)


@router.post(
    "/payments/{transaction_id}/retry",
    response_model=PaymentTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=STATE_ERRORS,
)
async def retry_payment(
    engine: Engine,
    tenant_id: TenantId,
    payload: PaymentRetryRequest,
    transaction_id: Annotated[UUID, Path()],
) -> PaymentTransactionResponse:
    await _check_transaction_owner(engine, tenant_id, transaction_id)
    txn = await engine.retry(transaction_id, payload.payment_method_id)
    return PaymentTransactionResponse.model_validate(txn)
