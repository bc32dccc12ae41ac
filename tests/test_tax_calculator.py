"""Tests for the GST calculator."""

from decimal import Decimal

import pytest

from storefront.config import Settings
from storefront.pipeline.errors import EmptyCartError, InvalidLineItemError
from storefront.pipeline.tax_calculator import (
    FlatRatePolicy,
    TaxCalculator,
    TieredRatePolicy,
    round_half_up,
)
from storefront.schemas.orders import LineItem


def item(price, qty=1, pid=None):
    return LineItem(product_id=pid or f"p-{price}", name=f"Item {price}", unit_price=price, quantity=qty)


@pytest.fixture
def calculator():
    return TaxCalculator(TieredRatePolicy(Decimal("5"), Decimal("18"), 2500))


class TestWorkedExamples:

    def test_low_tier_with_delivery(self, calculator):
        result = calculator.compute_breakdown([item(2000, 2)], delivery_charge=50)

        assert result.subtotal == 4000
        assert result.tax.taxable_value == 4050
        assert result.tax.tax_amount == 203
        assert result.grand_total == 4253

    def test_mixed_tiers_without_delivery(self, calculator):
        result = calculator.compute_breakdown([item(2000), item(3000)], delivery_charge=0)

        by_rate = {c.rate: c for c in result.tax.components}
        assert by_rate[Decimal("5")].tax_amount == 100
        assert by_rate[Decimal("18")].tax_amount == 540
        assert result.tax.tax_amount == 640
        assert result.grand_total == 5640

    def test_mixed_tiers_effective_rate(self, calculator):
        result = calculator.compute_breakdown([item(2000), item(3000)])
        assert result.tax.tax_rate == Decimal("12.80")

    def test_single_tier_reports_its_rate(self, calculator):
        result = calculator.compute_breakdown([item(2000, 2)], delivery_charge=50)
        assert result.tax.tax_rate == Decimal("5")


class TestTierBoundary:

    def test_price_at_threshold_is_low_rate(self, calculator):
        result = calculator.compute_breakdown([item(2500)])
        assert result.tax.tax_amount == 125

    def test_price_above_threshold_is_high_rate(self, calculator):
        # 2501 * 18% = 450.18
        result = calculator.compute_breakdown([item(2501)])
        assert result.tax.tax_amount == 450

    def test_tier_follows_unit_price_not_line_total(self, calculator):
        result = calculator.compute_breakdown([item(1500, 4)])
        assert [c.rate for c in result.tax.components] == [Decimal("5")]
        assert result.tax.tax_amount == 300


class TestRounding:

    def test_half_up(self):
        assert round_half_up(Decimal("2.5")) == 3
        assert round_half_up(Decimal("3.5")) == 4
        assert round_half_up(Decimal("2.49")) == 2

    def test_rounded_per_line_not_on_aggregate(self, calculator):
        # three lines of 10 at 5% are 0.5 each -> 1 each; the aggregate 1.5 would give 2
        result = calculator.compute_breakdown([item(10, pid="a"), item(10, pid="b"), item(10, pid="c")])
        assert result.tax.tax_amount == 3

    def test_delivery_split_across_tiers(self, calculator):
        result = calculator.compute_breakdown([item(2000), item(3000)], delivery_charge=100)

        by_rate = {c.rate: c for c in result.tax.components}
        assert by_rate[Decimal("5")].delivery_share == 40
        assert by_rate[Decimal("18")].delivery_share == 60
        # 100 + 2 on the low tier, 540 + 10.8 -> 11 on the high tier
        assert result.tax.tax_amount == 653
        assert result.grand_total == 5000 + 100 + 653

    def test_display_shares_sum_to_delivery(self, calculator):
        result = calculator.compute_breakdown([item(1000), item(2600), item(2600, pid="x")], delivery_charge=99)
        assert sum(c.delivery_share for c in result.tax.components) == 99

    def test_zero_subtotal_taxes_delivery_at_lowest_rate(self, calculator):
        result = calculator.compute_breakdown([item(0)], delivery_charge=100)
        assert result.tax.tax_amount == 5
        assert result.grand_total == 105


class TestFlatPolicy:

    def test_flat_rate_on_taxable_value(self):
        calculator = TaxCalculator(FlatRatePolicy(Decimal("5")))
        result = calculator.compute_breakdown([item(2000, 2)], delivery_charge=50)

        assert len(result.tax.components) == 1
        assert result.tax.tax_amount == 203
        assert result.grand_total == 4253

    def test_flat_ignores_threshold(self):
        calculator = TaxCalculator(FlatRatePolicy(Decimal("5")))
        result = calculator.compute_breakdown([item(2000), item(3000)])
        assert result.tax.tax_amount == 250

    def test_policy_from_settings(self):
        flat = TaxCalculator.from_settings(Settings(tax_policy="flat", tax_flat_rate=Decimal("12")))
        tiered = TaxCalculator.from_settings(Settings())

        assert isinstance(flat.policy, FlatRatePolicy)
        assert flat.policy.rate == Decimal("12")
        assert isinstance(tiered.policy, TieredRatePolicy)
        assert tiered.policy.threshold == 2500


class TestValidation:

    def test_empty_cart(self, calculator):
        with pytest.raises(EmptyCartError):
            calculator.compute_breakdown([])

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_quantity(self, calculator, qty):
        with pytest.raises(InvalidLineItemError):
            calculator.compute_breakdown([item(100, qty)])

    def test_negative_price(self, calculator):
        with pytest.raises(InvalidLineItemError):
            calculator.compute_breakdown([item(-1)])

    def test_negative_delivery(self, calculator):
        with pytest.raises(InvalidLineItemError):
            calculator.compute_breakdown([item(100)], delivery_charge=-10)


class TestDeterminism:

    def test_same_input_same_output(self, calculator):
        items = [item(2000), item(3000), item(150, 7)]
        first = calculator.compute_breakdown(items, 75)
        second = calculator.compute_breakdown(list(items), 75)
        assert first == second

    def test_grand_total_identity(self, calculator):
        result = calculator.compute_breakdown([item(999, 3), item(4999)], delivery_charge=49)
        assert result.grand_total == result.subtotal + result.delivery_charge + result.tax.tax_amount


class TestGstSplit:

    def test_intra_state_halves_sum_to_tax(self, calculator):
        tax = calculator.compute_breakdown([item(2000, 2)], delivery_charge=50).tax
        split = tax.gst_split()

        assert split.cgst == 102
        assert split.sgst == 101
        assert split.cgst + split.sgst == tax.tax_amount

    def test_inter_state_is_igst(self, calculator):
        tax = calculator.compute_breakdown([item(2000, 2)], delivery_charge=50).tax
        split = tax.gst_split(inter_state=True)
        assert (split.igst, split.cgst, split.sgst) == (203, 0, 0)
