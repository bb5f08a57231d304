"""Money arithmetic for billing cycles and adjustments.

All monetary results are rounded to cents with ROUND_HALF_UP. Local
currency amounts are converted independently from their USD counterparts,
so the local total can drift one cent from the sum of its parts; use
``local_total_consistent`` to re-validate instead of assuming it.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

from license_billing.calculators.types import CostBreakdown, TaxRuleSnapshot
from license_billing.errors import ValidationFailed

CENT = Decimal("0.01")
ZERO = Decimal("0")


def round_money(amount: Decimal) -> Decimal:
    """Round to 2 decimal places, half up."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class CostCalculator:
    """Pure cost arithmetic.

    Args:
        round_per_rule: Round each tax rule's amount before summing. The
            summed tax is rounded either way.
    """

    def __init__(self, round_per_rule: bool = False):
        self.round_per_rule = round_per_rule

    def base_cost(
        self,
        price_per_seat_usd: Decimal,
        billable_seats: int,
        minimum_seats: int,
        billing_cycle_months: int,
    ) -> Decimal:
        """price x max(billable, minimum) x months."""
        if billable_seats < 0:
            raise ValidationFailed("billable_seats cannot be negative", field="billable_seats")
        if minimum_seats < 0:
            raise ValidationFailed("minimum_seats cannot be negative", field="minimum_seats")
        if billing_cycle_months < 1:
            raise ValidationFailed(
                "billing_cycle_months must be positive", field="billing_cycle_months"
            )
        if price_per_seat_usd < 0:
            raise ValidationFailed("price cannot be negative", field="price_per_seat_usd")
        seats = max(billable_seats, minimum_seats)
        return round_money(price_per_seat_usd * seats * billing_cycle_months)

    def adjustment_subtotal(
        self,
        employees_added: int,
        months_remaining: int,
        price_per_employee_usd: Decimal,
    ) -> Decimal:
        """employees added x months remaining x price."""
        if employees_added < 0:
            raise ValidationFailed("employees_added cannot be negative", field="employees_added")
        if months_remaining < 0:
            raise ValidationFailed("months_remaining cannot be negative", field="months_remaining")
        if price_per_employee_usd < 0:
            raise ValidationFailed("price cannot be negative", field="price_per_employee_usd")
        return round_money(price_per_employee_usd * employees_added * months_remaining)

    def tax(self, amount_usd: Decimal, rules: Sequence[TaxRuleSnapshot]) -> Decimal:
        total = ZERO
        for rule in rules:
            portion = amount_usd * rule.rate
            if self.round_per_rule:
                portion = round_money(portion)
            total += portion
        return round_money(total)

    def convert(self, amount_usd: Decimal, exchange_rate: Decimal) -> Decimal:
        return round_money(amount_usd * exchange_rate)

    def breakdown(
        self,
        base_usd: Decimal,
        rules: Sequence[TaxRuleSnapshot],
        exchange_rate: Decimal,
        currency: str,
    ) -> CostBreakdown:
        """Tax, total and local conversions for an already-computed base.

        Order: tax on base, total = round(base + tax), then each of base,
        tax and total converted on its own.
        """
        if exchange_rate <= 0:
            raise ValidationFailed("exchange_rate must be positive", field="exchange_rate")
        base_usd = round_money(base_usd)
        tax_usd = self.tax(base_usd, rules)
        total_usd = round_money(base_usd + tax_usd)
        return CostBreakdown(
            base_usd=base_usd,
            tax_usd=tax_usd,
            total_usd=total_usd,
            exchange_rate=exchange_rate,
            base_local=self.convert(base_usd, exchange_rate),
            tax_local=self.convert(tax_usd, exchange_rate),
            total_local=self.convert(total_usd, exchange_rate),
            currency=currency,
            tax_rules=tuple(rules),
        )

    def cycle_cost(
        self,
        price_per_seat_usd: Decimal,
        billable_seats: int,
        minimum_seats: int,
        billing_cycle_months: int,
        rules: Sequence[TaxRuleSnapshot],
        exchange_rate: Decimal,
        currency: str,
    ) -> CostBreakdown:
        base = self.base_cost(
            price_per_seat_usd, billable_seats, minimum_seats, billing_cycle_months
        )
        return self.breakdown(base, rules, exchange_rate, currency)

    def adjustment_cost(
        self,
        employees_added: int,
        months_remaining: int,
        price_per_employee_usd: Decimal,
        rules: Sequence[TaxRuleSnapshot],
        exchange_rate: Decimal,
        currency: str,
        prior_subtotal_usd: Decimal = ZERO,
    ) -> CostBreakdown:
        """Price the added seats and stack them on any subtotal already charged.

        Seats merged in earlier keep the proration they were priced at; tax
        and conversion are then recomputed on the combined subtotal.
        """
        subtotal = prior_subtotal_usd + self.adjustment_subtotal(
            employees_added, months_remaining, price_per_employee_usd
        )
        return self.breakdown(subtotal, rules, exchange_rate, currency)


def local_total_consistent(
    base_local: Decimal, tax_local: Decimal, total_local: Decimal, tolerance: Decimal = CENT
) -> bool:
    """Check the independently converted local total against its parts."""
    return abs(round_money(base_local + tax_local) - total_local) <= tolerance
