"""
Tax Calculator
==============
Pure computation of subtotal, GST and grand total for a cart.

Two rate policies are supported and one is chosen per process:

- FlatRatePolicy: one rate on (subtotal + delivery charge).
- TieredRatePolicy: each item taxed at the low rate when its unit price is
  at or below the threshold, the high rate above it. The delivery charge is
  spread across tiers by each tier's share of the subtotal.

Rounding is ROUND_HALF_UP, applied per item and per tier delivery share,
never on the aggregate alone.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Sequence

from storefront.pipeline.errors import EmptyCartError, InvalidLineItemError
from storefront.schemas.orders import LineItem, OrderFinancials, TaxBreakdown, TaxComponent

HUNDRED = Decimal(100)
ONE = Decimal(1)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(ONE, rounding=ROUND_HALF_UP))


def _rate_label(rate: Decimal) -> str:
    return f"GST {rate.normalize():f}%"


# =============================================================================
# RATE POLICIES
# =============================================================================

class RatePolicy(ABC):
    """Selects the tax rate (percent) for a line item."""

    @abstractmethod
    def rate_for(self, item: LineItem) -> Decimal:
        pass

    @property
    @abstractmethod
    def base_rate(self) -> Decimal:
        """Rate applied to the delivery charge when there is no item subtotal."""

    @property
    def per_item(self) -> bool:
        return True


class FlatRatePolicy(RatePolicy):

    def __init__(self, rate: Decimal = Decimal("5")):
        self.rate = Decimal(rate)

    def rate_for(self, item: LineItem) -> Decimal:
        return self.rate

    @property
    def base_rate(self) -> Decimal:
        return self.rate

    @property
    def per_item(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"FlatRatePolicy(rate={self.rate})"


class TieredRatePolicy(RatePolicy):
    """Low rate for unit_price <= threshold, high rate above it."""

    def __init__(
        self,
        low_rate: Decimal = Decimal("5"),
        high_rate: Decimal = Decimal("18"),
        threshold: int = 2500,
    ):
        self.low_rate = Decimal(low_rate)
        self.high_rate = Decimal(high_rate)
        self.threshold = threshold

    def rate_for(self, item: LineItem) -> Decimal:
        return self.low_rate if item.unit_price <= self.threshold else self.high_rate

    @property
    def base_rate(self) -> Decimal:
        return min(self.low_rate, self.high_rate)

    def __repr__(self) -> str:
        return (
            f"TieredRatePolicy(low_rate={self.low_rate}, high_rate={self.high_rate}, "
            f"threshold={self.threshold})"
        )


# =============================================================================
# CALCULATOR
# =============================================================================

class TaxCalculator:
    """Computes OrderFinancials from line items and a delivery charge."""

    def __init__(self, policy: RatePolicy = None):
        self.policy = policy or TieredRatePolicy()

    @classmethod
    def from_settings(cls, settings) -> "TaxCalculator":
        if settings.tax_policy == "flat":
            return cls(FlatRatePolicy(settings.tax_flat_rate))
        return cls(TieredRatePolicy(
            low_rate=settings.tax_low_rate,
            high_rate=settings.tax_high_rate,
            threshold=settings.tax_threshold,
        ))

    def compute_breakdown(self, items: Sequence[LineItem], delivery_charge: int = 0) -> OrderFinancials:
        self._validate(items, delivery_charge)

        subtotal = sum(item.unit_price * item.quantity for item in items)
        taxable_value = subtotal + delivery_charge

        if self.policy.per_item:
            components = self._tiered_components(items, subtotal, delivery_charge)
        else:
            components = self._flat_components(subtotal, delivery_charge)

        tax_amount = sum(c.tax_amount for c in components)
        tax = TaxBreakdown(
            taxable_value=taxable_value,
            tax_rate=self._effective_rate(components, tax_amount, taxable_value),
            tax_amount=tax_amount,
            components=components,
        )
        return OrderFinancials(
            subtotal=subtotal,
            delivery_charge=delivery_charge,
            tax=tax,
            grand_total=subtotal + delivery_charge + tax_amount,
        )

    def _validate(self, items: Sequence[LineItem], delivery_charge: int) -> None:
        if not items:
            raise EmptyCartError("Cannot compute tax for an empty cart")
        for item in items:
            if item.quantity <= 0:
                raise InvalidLineItemError(
                    f"Quantity must be positive for {item.product_id}",
                    product_id=item.product_id,
                    quantity=item.quantity,
                )
            if item.unit_price < 0:
                raise InvalidLineItemError(
                    f"Unit price must not be negative for {item.product_id}",
                    product_id=item.product_id,
                    unit_price=item.unit_price,
                )
        if delivery_charge < 0:
            raise InvalidLineItemError(
                "Delivery charge must not be negative", delivery_charge=delivery_charge
            )

    def _flat_components(self, subtotal: int, delivery_charge: int) -> List[TaxComponent]:
        rate = self.policy.base_rate
        tax = round_half_up(Decimal(subtotal + delivery_charge) * rate / HUNDRED)
        return [TaxComponent(
            label=_rate_label(rate),
            rate=rate,
            items_value=subtotal,
            delivery_share=delivery_charge,
            tax_amount=tax,
        )]

    def _tiered_components(
        self, items: Sequence[LineItem], subtotal: int, delivery_charge: int
    ) -> List[TaxComponent]:
        # rate -> [items_value, item_tax]; insertion order follows the cart
        tiers: Dict[Decimal, List[int]] = OrderedDict()
        for item in items:
            rate = self.policy.rate_for(item)
            line_total = item.unit_price * item.quantity
            tier = tiers.setdefault(rate, [0, 0])
            tier[0] += line_total
            tier[1] += round_half_up(Decimal(line_total) * rate / HUNDRED)

        if subtotal == 0:
            # Nothing to apportion by; tax delivery at the base rate.
            base = self.policy.base_rate
            tiers.setdefault(base, [0, 0])
            shares = {rate: (Decimal(delivery_charge) if rate == base else Decimal(0)) for rate in tiers}
        else:
            shares = {
                rate: Decimal(delivery_charge) * Decimal(values[0]) / Decimal(subtotal)
                for rate, values in tiers.items()
            }

        display_shares = self._display_shares(shares, delivery_charge)
        components = []
        for rate, (items_value, item_tax) in tiers.items():
            delivery_tax = round_half_up(shares[rate] * rate / HUNDRED)
            components.append(TaxComponent(
                label=_rate_label(rate),
                rate=rate,
                items_value=items_value,
                delivery_share=display_shares[rate],
                tax_amount=item_tax + delivery_tax,
            ))
        return components

    @staticmethod
    def _display_shares(shares: Dict[Decimal, Decimal], delivery_charge: int) -> Dict[Decimal, int]:
        """Integer delivery shares that add up to the delivery charge exactly."""
        rates = list(shares)
        rounded = {rate: round_half_up(shares[rate]) for rate in rates[:-1]}
        rounded[rates[-1]] = delivery_charge - sum(rounded.values())
        return rounded

    @staticmethod
    def _effective_rate(components: List[TaxComponent], tax_amount: int, taxable_value: int) -> Decimal:
        contributing = {c.rate for c in components if c.items_value or c.delivery_share}
        if len(contributing) == 1:
            return contributing.pop()
        if len(contributing) == 0 or taxable_value == 0:
            return components[0].rate
        return (Decimal(tax_amount) * HUNDRED / Decimal(taxable_value)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
