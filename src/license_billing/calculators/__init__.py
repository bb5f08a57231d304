"""Pure classification and cost arithmetic."""

from license_billing.calculators.classifier import (
    classification_filter,
    classify,
    count_billable,
    has_recent_activity,
    in_grace_period,
    is_billable,
)
from license_billing.calculators.cost_calculator import (
    CostCalculator,
    local_total_consistent,
    round_money,
)
from license_billing.calculators.types import (
    AdjustmentStatus,
    BillingClassification,
    BillingStatus,
    ContractualStatus,
    CostBreakdown,
    LeaveType,
    LicenseStatus,
    SeatSnapshot,
    TaxRuleSnapshot,
    TransactionStatus,
)

__all__ = [
    "AdjustmentStatus",
    "BillingClassification",
    "BillingStatus",
    "ContractualStatus",
    "CostBreakdown",
    "CostCalculator",
    "LeaveType",
    "LicenseStatus",
    "SeatSnapshot",
    "TaxRuleSnapshot",
    "TransactionStatus",
    "classification_filter",
    "classify",
    "count_billable",
    "has_recent_activity",
    "in_grace_period",
    "is_billable",
    "local_total_consistent",
    "round_money",
]
