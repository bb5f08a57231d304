"""Status state machines for payment transactions, adjustments and cycles."""

from __future__ import annotations

from typing import Any, ClassVar

from license_billing.calculators.types import AdjustmentStatus, BillingStatus, TransactionStatus
from license_billing.errors import InvalidStateTransition


def _value(status: Any) -> str:
    return getattr(status, "value", status)


class _StateMachine:
    """Transition table lookups shared by the concrete machines.

    Tables are keyed by the stored status strings; enum members and plain
    strings are both accepted by every lookup.
    """

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(_value(from_status), [])
        return _value(to_status) in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidStateTransition if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransition(from_status, to_status)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return list(cls.VALID_TRANSITIONS.get(_value(current_status), []))

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(_value(status))


class TransactionStateMachine(_StateMachine):
    """State machine for payment transaction status transitions.

    Allowed transitions:
    - pending → processing
    - pending | processing → failed
    - pending | processing | failed → cancelled
    - processing → completed
    - completed → refunded

    A failed transaction is never reopened; a retry creates a follow-up
    transaction. Once retries are exhausted a failed transaction is final.
    """

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        TransactionStatus.PENDING.value: [
            TransactionStatus.PROCESSING.value,
            TransactionStatus.FAILED.value,
            TransactionStatus.CANCELLED.value,
        ],
        TransactionStatus.PROCESSING.value: [
            TransactionStatus.COMPLETED.value,
            TransactionStatus.FAILED.value,
            TransactionStatus.CANCELLED.value,
        ],
        TransactionStatus.FAILED.value: [TransactionStatus.CANCELLED.value],
        TransactionStatus.COMPLETED.value: [TransactionStatus.REFUNDED.value],
        TransactionStatus.CANCELLED.value: [],  # Terminal state
        TransactionStatus.REFUNDED.value: [],  # Terminal state
    }

    # Statuses a follow-up transaction may be created from
    RETRYABLE = frozenset({TransactionStatus.FAILED.value, TransactionStatus.CANCELLED.value})

    # Statuses that block a new transaction for the same target
    LIVE = frozenset(
        {
            TransactionStatus.PENDING.value,
            TransactionStatus.PROCESSING.value,
            TransactionStatus.COMPLETED.value,
        }
    )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        # Failed is only final once retries are exhausted, which the service decides
        return _value(status) in (
            TransactionStatus.COMPLETED.value,
            TransactionStatus.CANCELLED.value,
            TransactionStatus.REFUNDED.value,
        )

    @classmethod
    def can_retry(cls, status: str) -> bool:
        return _value(status) in cls.RETRYABLE


class AdjustmentStateMachine(_StateMachine):
    """State machine for license adjustment payment status.

    Allowed transitions:
    - pending → processing (payment started)
    - pending | processing → completed (payment completed)
    - processing → pending (payment failed or cancelled)
    - pending → cancelled
    - completed → refunded
    """

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        AdjustmentStatus.PENDING.value: [
            AdjustmentStatus.PROCESSING.value,
            AdjustmentStatus.COMPLETED.value,
            AdjustmentStatus.CANCELLED.value,
        ],
        AdjustmentStatus.PROCESSING.value: [
            AdjustmentStatus.COMPLETED.value,
            AdjustmentStatus.PENDING.value,
        ],
        AdjustmentStatus.COMPLETED.value: [AdjustmentStatus.REFUNDED.value],
        AdjustmentStatus.CANCELLED.value: [],
        AdjustmentStatus.REFUNDED.value: [],
    }

    # Financial fields may not change in these statuses
    FINANCIALS_IMMUTABLE = frozenset(
        {AdjustmentStatus.COMPLETED.value, AdjustmentStatus.REFUNDED.value}
    )

    @classmethod
    def financials_locked(cls, status: str) -> bool:
        return _value(status) in cls.FINANCIALS_IMMUTABLE


class BillingCycleStateMachine(_StateMachine):
    """Billing cycle status transitions.

    - pending → invoiced | overdue | paid
    - invoiced → overdue | paid
    - overdue → paid
    """

    VALID_TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        BillingStatus.PENDING.value: [
            BillingStatus.INVOICED.value,
            BillingStatus.OVERDUE.value,
            BillingStatus.PAID.value,
        ],
        BillingStatus.INVOICED.value: [BillingStatus.OVERDUE.value, BillingStatus.PAID.value],
        BillingStatus.OVERDUE.value: [BillingStatus.PAID.value],
        BillingStatus.PAID.value: [],
    }
