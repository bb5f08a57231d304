"""Tests for cost arithmetic."""

from decimal import Decimal

import pytest

from license_billing.calculators import (
    CostCalculator,
    TaxRuleSnapshot,
    local_total_consistent,
    round_money,
)
from license_billing.errors import ValidationFailed

TEN_PERCENT = [TaxRuleSnapshot(name="Sales tax", rate=Decimal("0.10"))]


class TestRounding:
    """Half-up rounding to cents."""

    def test_half_up(self):
        assert round_money(Decimal("1.005")) == Decimal("1.01")
        assert round_money(Decimal("1.004")) == Decimal("1.00")
        assert round_money(Decimal("2.675")) == Decimal("2.68")

    def test_total_is_rounded_sum(self):
        """Total always equals round(base + tax)."""
        calc = CostCalculator()
        rules = [
            TaxRuleSnapshot(name="VAT", rate=Decimal("0.19")),
            TaxRuleSnapshot(name="Levy", rate=Decimal("0.0125")),
        ]
        for price in ("0.99", "3.00", "7.33", "12.49"):
            for seats in (0, 1, 5, 13, 101):
                cost = calc.cycle_cost(
                    Decimal(price), seats, 5, 3, rules, Decimal("1"), "USD"
                )
                assert cost.total_usd == round_money(cost.base_usd + cost.tax_usd)


class TestBaseCost:
    """price x max(billable, minimum) x months."""

    def test_minimum_applies(self):
        calc = CostCalculator()
        assert calc.base_cost(Decimal("10"), 3, 5, 1) == Decimal("50.00")

    def test_billable_above_minimum(self):
        calc = CostCalculator()
        assert calc.base_cost(Decimal("10"), 8, 5, 3) == Decimal("240.00")

    def test_zero_billable_charges_minimum(self):
        calc = CostCalculator()
        assert calc.base_cost(Decimal("3.00"), 0, 5, 12) == Decimal("180.00")

    def test_monotonic_in_billable_seats(self):
        calc = CostCalculator()
        totals = [
            calc.cycle_cost(Decimal("4.25"), n, 5, 1, TEN_PERCENT, Decimal("0.92"), "EUR").total_usd
            for n in range(0, 25)
        ]
        assert totals == sorted(totals)

    @pytest.mark.parametrize(
        "price,billable,minimum,months",
        [
            (Decimal("10"), -1, 5, 1),
            (Decimal("10"), 3, -1, 1),
            (Decimal("10"), 3, 5, 0),
            (Decimal("-1"), 3, 5, 1),
        ],
    )
    def test_invalid_inputs(self, price, billable, minimum, months):
        with pytest.raises(ValidationFailed):
            CostCalculator().base_cost(price, billable, minimum, months)


class TestAdjustmentSubtotal:
    """employees added x months remaining x price."""

    def test_subtotal(self):
        assert CostCalculator().adjustment_subtotal(2, 1, Decimal("10")) == Decimal("20.00")

    def test_zero_months_remaining(self):
        assert CostCalculator().adjustment_subtotal(4, 0, Decimal("10")) == Decimal("0.00")

    def test_negative_employees(self):
        with pytest.raises(ValidationFailed) as exc_info:
            CostCalculator().adjustment_subtotal(-2, 1, Decimal("10"))
        assert exc_info.value.field == "employees_added"


class TestTax:
    """Tax summed across rules."""

    def test_no_rules(self):
        assert CostCalculator().tax(Decimal("50"), []) == Decimal("0.00")

    def test_rules_are_summed(self):
        rules = [
            TaxRuleSnapshot(name="State", rate=Decimal("0.06")),
            TaxRuleSnapshot(name="City", rate=Decimal("0.015")),
        ]
        assert CostCalculator().tax(Decimal("200.00"), rules) == Decimal("15.00")

    def test_per_rule_rounding(self):
        """Rounding each rule first can drop sub-cent portions."""
        rules = [
            TaxRuleSnapshot(name="A", rate=Decimal("0.15")),
            TaxRuleSnapshot(name="B", rate=Decimal("0.15")),
        ]
        assert CostCalculator().tax(Decimal("0.03"), rules) == Decimal("0.01")
        assert CostCalculator(round_per_rule=True).tax(Decimal("0.03"), rules) == Decimal(
            "0.00"
        )


class TestScenarios:
    """Reference arithmetic for a new license and its first adjustment."""

    def test_initial_cycle(self):
        cost = CostCalculator().cycle_cost(
            Decimal("10"), 3, 5, 1, TEN_PERCENT, Decimal("1"), "USD"
        )
        assert cost.base_usd == Decimal("50.00")
        assert cost.tax_usd == Decimal("5.00")
        assert cost.total_usd == Decimal("55.00")
        assert cost.exchange_rate == Decimal("1")
        assert cost.total_local == Decimal("55.00")
        assert cost.tax_rules_json == [{"name": "Sales tax", "rate": "0.10"}]

    def test_growth_adjustment(self):
        cost = CostCalculator().adjustment_cost(
            2, 1, Decimal("10"), TEN_PERCENT, Decimal("1"), "USD"
        )
        assert cost.base_usd == Decimal("20.00")
        assert cost.tax_usd == Decimal("2.00")
        assert cost.total_usd == Decimal("22.00")

    def test_growth_stacks_on_prior_subtotal(self):
        cost = CostCalculator().adjustment_cost(
            1, 1, Decimal("10"), TEN_PERCENT, Decimal("0.92"), "EUR",
            prior_subtotal_usd=Decimal("60.00"),
        )
        assert cost.base_usd == Decimal("70.00")
        assert cost.tax_usd == Decimal("7.00")
        assert cost.total_local == Decimal("70.84")

    def test_local_amounts_converted_independently(self):
        cost = CostCalculator().cycle_cost(
            Decimal("10"), 3, 5, 1, TEN_PERCENT, Decimal("0.92"), "EUR"
        )
        assert cost.base_local == Decimal("46.00")
        assert cost.tax_local == Decimal("4.60")
        assert cost.total_local == Decimal("50.60")
        assert cost.currency == "EUR"


class TestLocalConsistency:
    """Local totals may drift one cent from their parts."""

    def test_one_cent_drift_is_tolerated(self):
        rules = [TaxRuleSnapshot(name="Full", rate=Decimal("1"))]
        cost = CostCalculator().breakdown(Decimal("1.00"), rules, Decimal("1.005"), "XYZ")
        assert cost.base_local + cost.tax_local == Decimal("2.02")
        assert cost.total_local == Decimal("2.01")
        assert local_total_consistent(cost.base_local, cost.tax_local, cost.total_local)

    def test_larger_drift_is_flagged(self):
        assert not local_total_consistent(Decimal("1.00"), Decimal("1.00"), Decimal("2.05"))

    def test_rate_must_be_positive(self):
        with pytest.raises(ValidationFailed):
            CostCalculator().breakdown(Decimal("1.00"), [], Decimal("0"), "USD")
