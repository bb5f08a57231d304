"""Tests for status state machines."""

import pytest

from license_billing.calculators.types import AdjustmentStatus, BillingStatus, TransactionStatus
from license_billing.errors import InvalidStateTransition
from license_billing.services.state_machine import (
    AdjustmentStateMachine,
    BillingCycleStateMachine,
    TransactionStateMachine,
)

LEGAL_TRANSACTION_MOVES = {
    ("pending", "processing"),
    ("pending", "failed"),
    ("pending", "cancelled"),
    ("processing", "completed"),
    ("processing", "failed"),
    ("processing", "cancelled"),
    ("failed", "cancelled"),
    ("completed", "refunded"),
}


class TestTransactionStateMachine:
    """Test payment transaction transitions."""

    def test_transition_table(self):
        """Exactly the legal pairs are allowed."""
        for from_status in TransactionStatus:
            for to_status in TransactionStatus:
                expected = (from_status.value, to_status.value) in LEGAL_TRANSACTION_MOVES
                assert (
                    TransactionStateMachine.can_transition(from_status.value, to_status.value)
                    is expected
                ), (from_status, to_status)

    def test_enum_members_and_strings_agree(self):
        assert TransactionStateMachine.can_transition(
            TransactionStatus.PENDING, TransactionStatus.PROCESSING
        )
        assert TransactionStateMachine.can_transition("pending", TransactionStatus.PROCESSING)

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidStateTransition) as exc_info:
            TransactionStateMachine.validate_transition("completed", "processing")

        assert exc_info.value.from_status == "completed"
        assert exc_info.value.to_status == "processing"
        assert exc_info.value.code == "invalid_state_transition"

    def test_terminal_states(self):
        assert TransactionStateMachine.is_terminal("completed") is True
        assert TransactionStateMachine.is_terminal("cancelled") is True
        assert TransactionStateMachine.is_terminal("refunded") is True
        # Failed is final only once retries run out
        assert TransactionStateMachine.is_terminal("failed") is False
        assert TransactionStateMachine.is_terminal("pending") is False

    def test_can_retry(self):
        assert TransactionStateMachine.can_retry("failed") is True
        assert TransactionStateMachine.can_retry("cancelled") is True
        assert TransactionStateMachine.can_retry("completed") is False
        assert TransactionStateMachine.can_retry("pending") is False

    def test_next_statuses(self):
        assert set(TransactionStateMachine.get_next_statuses("processing")) == {
            "completed",
            "failed",
            "cancelled",
        }
        assert TransactionStateMachine.get_next_statuses("refunded") == []


class TestAdjustmentStateMachine:
    """Test adjustment payment status transitions."""

    def test_valid_transitions(self):
        assert AdjustmentStateMachine.can_transition("pending", "processing") is True
        assert AdjustmentStateMachine.can_transition("processing", "completed") is True
        assert AdjustmentStateMachine.can_transition("processing", "pending") is True
        assert AdjustmentStateMachine.can_transition("pending", "cancelled") is True
        assert AdjustmentStateMachine.can_transition("completed", "refunded") is True

    def test_invalid_transitions(self):
        assert AdjustmentStateMachine.can_transition("completed", "pending") is False
        assert AdjustmentStateMachine.can_transition("cancelled", "pending") is False
        assert AdjustmentStateMachine.can_transition("refunded", "completed") is False
        assert AdjustmentStateMachine.can_transition("processing", "cancelled") is False

    def test_financials_locked(self):
        assert AdjustmentStateMachine.financials_locked(AdjustmentStatus.COMPLETED) is True
        assert AdjustmentStateMachine.financials_locked("refunded") is True
        assert AdjustmentStateMachine.financials_locked("pending") is False


class TestBillingCycleStateMachine:
    """Test billing cycle status transitions."""

    def test_paid_is_terminal(self):
        assert BillingCycleStateMachine.is_terminal(BillingStatus.PAID) is True
        assert BillingCycleStateMachine.is_terminal("pending") is False

    def test_paths_to_paid(self):
        for status in ("pending", "invoiced", "overdue"):
            assert BillingCycleStateMachine.can_transition(status, "paid") is True

    def test_no_way_back(self):
        assert BillingCycleStateMachine.can_transition("invoiced", "pending") is False
        assert BillingCycleStateMachine.can_transition("overdue", "invoiced") is False
