"""Type definitions for classification and cost arithmetic."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol


class ContractualStatus(str, Enum):
    """Employment contract status of a seat."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    TERMINATED = "terminated"


class LeaveType(str, Enum):
    """Kinds of declared long leave."""

    PARENTAL = "parental"
    MEDICAL = "medical"
    TECHNICAL = "technical"
    SABBATICAL = "sabbatical"
    OTHER = "other"


class BillingClassification(str, Enum):
    """Derived billing state of one seat. Never stored."""

    BILLABLE = "billable"
    NON_BILLABLE = "non_billable"
    GRACE_PERIOD = "grace_period"


class LicenseStatus(str, Enum):
    """Global license status values."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class BillingStatus(str, Enum):
    """Billing cycle status values."""

    PENDING = "pending"
    INVOICED = "invoiced"
    PAID = "paid"
    OVERDUE = "overdue"


class AdjustmentStatus(str, Enum):
    """License adjustment payment status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionStatus(str, Enum):
    """Payment transaction status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class SeatState(Protocol):
    """Fields the classifier reads from a seat."""

    contractual_status: str
    declared_long_leave: bool | None
    grace_period_start: datetime | None
    grace_period_end: datetime | None


@dataclass(frozen=True)
class SeatSnapshot:
    """Storage-free seat state, satisfies SeatState."""

    contractual_status: str = ContractualStatus.ACTIVE
    declared_long_leave: bool | None = False
    grace_period_start: datetime | None = None
    grace_period_end: datetime | None = None


@dataclass(frozen=True)
class TaxRuleSnapshot:
    """A tax rule captured at calculation time."""

    name: str
    rate: Decimal

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-safe dict (rate kept as a decimal string)."""
        return {"name": self.name, "rate": str(self.rate)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaxRuleSnapshot:
        return cls(name=data["name"], rate=Decimal(str(data["rate"])))


@dataclass(frozen=True)
class CostBreakdown:
    """Result of one cost calculation, in USD and the billing currency.

    ``base_usd`` is the period base cost for billing cycles and the
    prorated subtotal for adjustments.
    """

    base_usd: Decimal
    tax_usd: Decimal
    total_usd: Decimal
    exchange_rate: Decimal
    base_local: Decimal
    tax_local: Decimal
    total_local: Decimal
    currency: str
    tax_rules: tuple[TaxRuleSnapshot, ...] = field(default_factory=tuple)

    @property
    def tax_rules_json(self) -> list[dict[str, str]]:
        return [rule.to_dict() for rule in self.tax_rules]
