"""Seat billing classification.

Classification is derived on read and never persisted. The SQL filter in
``classification_filter`` is built from the same three predicates so list
queries agree with ``classify``.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import and_, false, not_, or_
from sqlalchemy.sql.elements import ColumnElement

from license_billing.calculators.types import BillingClassification, ContractualStatus, SeatState
from license_billing.clock import as_utc

BILLABLE_CLASSIFICATIONS = frozenset(
    {BillingClassification.BILLABLE, BillingClassification.GRACE_PERIOD}
)


def in_grace_period(seat: SeatState, now: datetime) -> bool:
    """Check whether a grace window is open at ``now`` (both ends inclusive)."""
    if seat.grace_period_start is None or seat.grace_period_end is None:
        return False
    return as_utc(seat.grace_period_start) <= as_utc(now) <= as_utc(seat.grace_period_end)


def classify(seat: SeatState, now: datetime) -> BillingClassification:
    """Classify one seat at ``now``.

    Rules, first match wins:
    1. open grace window -> GRACE_PERIOD (regardless of contract or leave)
    2. ACTIVE contract and not on declared long leave -> BILLABLE
    3. anything else -> NON_BILLABLE
    """
    if in_grace_period(seat, now):
        return BillingClassification.GRACE_PERIOD
    if seat.contractual_status == ContractualStatus.ACTIVE and not seat.declared_long_leave:
        return BillingClassification.BILLABLE
    return BillingClassification.NON_BILLABLE


def is_billable(seat: SeatState, now: datetime) -> bool:
    return classify(seat, now) in BILLABLE_CLASSIFICATIONS


def count_billable(seats: Iterable[SeatState], now: datetime) -> int:
    """Count seats classified BILLABLE or GRACE_PERIOD at ``now``."""
    return sum(1 for seat in seats if is_billable(seat, now))


def has_recent_activity(
    last_activity: datetime | None, now: datetime, window_days: int
) -> bool:
    """True if activity falls inside the trailing window ending at ``now``."""
    if last_activity is None:
        return False
    return as_utc(last_activity) >= as_utc(now) - timedelta(days=window_days)


def classification_filter(
    model: type, classification: BillingClassification, now: datetime
) -> ColumnElement[bool]:
    """SQL predicate selecting seats of ``model`` with the given classification."""
    grace = and_(
        model.grace_period_start.isnot(None),
        model.grace_period_end.isnot(None),
        model.grace_period_start <= now,
        model.grace_period_end >= now,
    )
    billable = and_(
        model.contractual_status == ContractualStatus.ACTIVE.value,
        or_(model.declared_long_leave.is_(None), model.declared_long_leave == false()),
    )

    if classification == BillingClassification.GRACE_PERIOD:
        return grace
    if classification == BillingClassification.BILLABLE:
        return and_(not_(grace), billable)
    return and_(not_(grace), not_(billable))
