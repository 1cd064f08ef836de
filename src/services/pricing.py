"""Basket pricing: pure functions turning basket lines into basket totals.

All amounts are integers in minor currency units. Each aggregation step is
clamped at zero, so a discount or credit can reduce a total to nothing but
never below it.
"""

import logging
from dataclasses import dataclass

from src.core.errors import InvalidBasketError
from src.core.money import apply_basis_points
from src.schemas.basket import Basket, BasketItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BasketTotals:
    """Aggregate totals computed for a basket."""

    sub_total: int = 0
    discount_total: int = 0
    promo_code_discount_value: int = 0
    fee_total: int = 0
    tax: int = 0
    credit_total: int = 0
    total: int = 0
    pay_later: int = 0
    charge_total: int = 0

    def as_update(self) -> dict[str, int]:
        """Field updates to apply to a ``Basket``."""
        return {
            "sub_total": self.sub_total,
            "discount_total": self.discount_total,
            "promo_code_discount_value": self.promo_code_discount_value,
            "fee_total": self.fee_total,
            "tax": self.tax,
            "credit_total": self.credit_total,
            "total": self.total,
            "pay_later": self.pay_later,
            "charge_total": self.charge_total,
        }


def line_total(item: BasketItem) -> int:
    """Price of one line after its own discounts, never negative."""
    return max(0, item.price - (item.discount_value or 0) - (item.promo_code_discount_value or 0))


def compute_totals(basket: Basket, tax_rate_basis_points: int = 0) -> BasketTotals:
    """Compute the aggregate totals of a basket.

    Order of application: line discounts and the basket discount, promo codes,
    fees, tax on the taxable amount, credits, then the split between the amount
    charged now and the amount deferred.

    Args:
        basket: Basket whose lines, credits and fees are priced.
        tax_rate_basis_points: Tax rate in basis points (2000 = 20%).

    Returns:
        BasketTotals: The computed aggregates.
    """
    if basket.is_empty:
        return BasketTotals()

    sub_total = sum(item.price for item in basket.items)

    discount_total = sum(item.discount_value or 0 for item in basket.items) + basket.discount_value
    after_discounts = max(0, sub_total - discount_total)

    promo = sum(item.promo_code_discount_value or 0 for item in basket.items)
    net = max(0, after_discounts - promo)

    fee_total = sum(fee.value for fee in basket.fee_items)
    taxable = net + fee_total
    tax = apply_basis_points(taxable, tax_rate_basis_points)

    available_credit = sum(credit.value for credit in basket.credit_items)
    credit_total = min(available_credit, taxable + tax)
    total = taxable + tax - credit_total

    # Each line defers at most its own price.
    deferred = sum(min(item.pay_later_value, line_total(item)) for item in basket.items)
    pay_later = min(deferred, total)
    charge_total = total - pay_later

    return BasketTotals(
        sub_total=sub_total,
        discount_total=discount_total,
        promo_code_discount_value=promo,
        fee_total=fee_total,
        tax=tax,
        credit_total=credit_total,
        total=total,
        pay_later=pay_later,
        charge_total=charge_total,
    )


def price_basket(basket: Basket, tax_rate_basis_points: int = 0) -> Basket:
    """Return a copy of ``basket`` with every aggregate recomputed."""
    totals = compute_totals(basket, tax_rate_basis_points)
    if basket.total and basket.total != totals.total:
        logger.warning(
            "Basket %s total %d differs from computed total %d, using computed value",
            basket.id,
            basket.total,
            totals.total,
        )
    return basket.model_copy(update=totals.as_update())


def validate_basket(basket: Basket) -> None:
    """Check every line against the pricing invariants.

    Baskets built through pydantic validation already satisfy them; this
    catches snapshots assembled with ``model_construct``.

    Raises:
        InvalidBasketError: If a line is negative, its total is inconsistent or
            it defers more than its total price.
    """
    for item in basket.items:
        discounts = (item.discount_value or 0) + (item.promo_code_discount_value or 0)
        expected = item.price - discounts
        if item.price < 0 or discounts < 0 or expected < 0:
            raise InvalidBasketError(
                f"Basket item {item.id} has a negative price or discounts exceeding its price",
                details={"item_id": item.id},
            )
        if item.total_price != expected:
            raise InvalidBasketError(
                f"Basket item {item.id} total price {item.total_price} does not match expected {expected}",
                details={"item_id": item.id, "expected": expected, "actual": item.total_price},
            )
        if item.pay_later_value < 0 or item.pay_later_value > item.total_price:
            raise InvalidBasketError(
                f"Basket item {item.id} defers {item.pay_later_value}, more than its total price {item.total_price}",
                details={"item_id": item.id, "pay_later_value": item.pay_later_value},
            )
    for credit in basket.credit_items:
        if credit.value < 0:
            raise InvalidBasketError(f"Credit {credit.id} has a negative value", details={"credit_id": credit.id})
    for fee in basket.fee_items:
        if fee.value < 0:
            raise InvalidBasketError(f"Fee {fee.id} has a negative value", details={"fee_id": fee.id})
