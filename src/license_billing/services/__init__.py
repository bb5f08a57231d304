"""License billing services."""

from license_billing.services.adjustment_service import AdjustmentEngine, PendingAdjustments
from license_billing.services.billing_cycle_service import BillingCycleGenerator, GenerationResult
from license_billing.services.cost_preview_service import (
    CostPreview,
    CostPreviewService,
    PeriodPreview,
)
from license_billing.services.employee_license_service import EmployeeLicenseService
from license_billing.services.locking import LicenseLocks
from license_billing.services.payment_service import (
    PaymentTransactionMachine,
    generate_payment_reference,
)
from license_billing.services.state_machine import (
    AdjustmentStateMachine,
    BillingCycleStateMachine,
    TransactionStateMachine,
)

__all__ = [
    "AdjustmentEngine",
    "AdjustmentStateMachine",
    "BillingCycleGenerator",
    "BillingCycleStateMachine",
    "CostPreview",
    "CostPreviewService",
    "EmployeeLicenseService",
    "GenerationResult",
    "LicenseLocks",
    "PaymentTransactionMachine",
    "PendingAdjustments",
    "PeriodPreview",
    "TransactionStateMachine",
    "generate_payment_reference",
]
