"""Unit tests for basket pricing."""

import logging

import pytest

from src.core.errors import InvalidBasketError
from src.schemas.basket import Basket, BasketItem, CourseRef, CreditItem, FeeItem
from src.services.pricing import compute_totals, line_total, price_basket, validate_basket


def make_item(item_id: str, price: int, **kwargs) -> BasketItem:
    return BasketItem(
        id=item_id,
        course=CourseRef(id=f"course-{item_id}", name="Throwing Course"),
        price=price,
        **kwargs,
    )


class TestComputeTotals:
    """Tests for compute_totals."""

    def test_empty_basket_totals_are_zero(self) -> None:
        """Test that an empty basket prices to zero everywhere."""
        totals = compute_totals(Basket(id="b", credit_items=(CreditItem(id="c", description="Gift", value=500),)))

        assert totals.total == 0
        assert totals.sub_total == 0
        assert totals.credit_total == 0
        assert totals.charge_total == 0

    def test_line_and_promo_discounts(self) -> None:
        """Test sub total, discounts and promo codes across lines."""
        basket = Basket(
            id="b",
            items=(
                make_item("1", 5000, discount_value=500),
                make_item("2", 3000, promo_code_discount_value=300),
            ),
        )

        totals = compute_totals(basket)

        assert totals.sub_total == 8000
        assert totals.discount_total == 500
        assert totals.promo_code_discount_value == 300
        assert totals.total == 7200
        assert totals.charge_total == 7200

    def test_basket_level_discount_is_clamped(self) -> None:
        """Test that a basket discount larger than the sub total clamps to zero."""
        basket = Basket(id="b", items=(make_item("1", 1000),), discount_value=5000)

        totals = compute_totals(basket)

        assert totals.discount_total == 5000
        assert totals.total == 0
        assert totals.charge_total == 0

    def test_tax_on_net_amount(self) -> None:
        """Test that tax is charged on the discounted amount."""
        basket = Basket(id="b", items=(make_item("1", 5000, discount_value=500),))

        totals = compute_totals(basket, tax_rate_basis_points=2000)

        assert totals.tax == 900
        assert totals.total == 5400

    def test_fees_are_taxed(self) -> None:
        """Test that fees join the taxable amount."""
        basket = Basket(
            id="b",
            items=(make_item("1", 4000),),
            fee_items=(FeeItem(id="f", description="Materials", value=1000),),
        )

        totals = compute_totals(basket, tax_rate_basis_points=2000)

        assert totals.fee_total == 1000
        assert totals.tax == 1000
        assert totals.total == 6000

    def test_credits_are_capped_at_amount_owed(self) -> None:
        """Test that credit never pushes the total below zero."""
        basket = Basket(
            id="b",
            items=(make_item("1", 2000),),
            credit_items=(
                CreditItem(id="c1", description="Gift card", value=1500),
                CreditItem(id="c2", description="Refund", value=1500),
            ),
        )

        totals = compute_totals(basket)

        assert totals.credit_total == 2000
        assert totals.total == 0

    def test_partial_credit(self) -> None:
        """Test a credit smaller than the amount owed."""
        basket = Basket(
            id="b",
            items=(make_item("1", 5000, discount_value=1000),),
            credit_items=(CreditItem(id="c", description="Gift card", value=1500),),
        )

        totals = compute_totals(basket, tax_rate_basis_points=1000)

        # 5000 - 1000 = 4000, tax 400, credit 1500
        assert totals.tax == 400
        assert totals.credit_total == 1500
        assert totals.total == 2900

    def test_pay_later_splits_charge(self) -> None:
        """Test that deferred amounts are not charged now."""
        basket = Basket(id="b", items=(make_item("1", 10000, pay_later_value=7500),))

        totals = compute_totals(basket)

        assert totals.total == 10000
        assert totals.pay_later == 7500
        assert totals.charge_total == 2500

    def test_pay_later_never_exceeds_total(self) -> None:
        """Test that the deferred amount is capped at the total."""
        basket = Basket(
            id="b",
            items=(make_item("1", 10000, pay_later_value=7500),),
            credit_items=(CreditItem(id="c", description="Gift card", value=5000),),
        )

        totals = compute_totals(basket)

        assert totals.total == 5000
        assert totals.pay_later == 5000
        assert totals.charge_total == 0

    def test_line_deferral_is_capped_at_line_price(self) -> None:
        """Test that a deposit line cannot defer another line's price."""
        deposit = BasketItem.model_construct(
            id="deposit",
            course=CourseRef(id="c1", name="Wheel Course"),
            price=1000,
            discount_value=None,
            promo_code_discount_value=None,
            total_price=1000,
            pay_later_value=5000,
        )
        basket = Basket.model_construct(id="b", items=(deposit, make_item("full", 4000)))

        totals = compute_totals(basket)

        assert totals.total == 5000
        assert totals.pay_later == 1000
        assert totals.charge_total == 4000

    def test_oversized_basket_discount_keeps_fees_payable(self) -> None:
        """Test a basket discount larger than the sub total.

        ``discount_total`` reports the discount granted; only the course part of
        the total is floored at zero, fees and their tax are still owed.
        """
        basket = Basket(
            id="b",
            items=(make_item("1", 1000, pay_later_value=500),),
            fee_items=(FeeItem(id="f", description="Registration", value=800),),
            discount_value=5000,
        )

        totals = compute_totals(basket, tax_rate_basis_points=2000)

        assert totals.sub_total == 1000
        assert totals.discount_total == 5000
        assert totals.tax == 160
        assert totals.total == 960
        assert totals.pay_later == 500
        assert totals.charge_total == 460
        assert totals.charge_total + totals.pay_later == totals.total

    @pytest.mark.parametrize(
        ("lines", "fee", "credit", "rate"),
        [
            ([(10000, 0, 7500), (4000, 0, 0)], 500, 0, 0),
            ([(5000, 500, 4500), (2000, 0, 1000)], 1000, 3000, 2000),
            ([(1000, 0, 1000)], 0, 5000, 0),
            ([(3333, 333, 3000), (1, 0, 1)], 250, 100, 1750),
            ([(800, 800, 0), (1200, 200, 1000)], 0, 150, 500),
        ],
    )
    def test_charge_and_deferral_add_up(
        self, lines: list[tuple[int, int, int]], fee: int, credit: int, rate: int
    ) -> None:
        """Test charge_total + pay_later == total with fees, credits and deposits."""
        basket = Basket(
            id="b",
            items=tuple(
                make_item(str(i), price, discount_value=discount, pay_later_value=deferred)
                for i, (price, discount, deferred) in enumerate(lines)
            ),
            fee_items=(FeeItem(id="f", description="Fee", value=fee),),
            credit_items=(CreditItem(id="c", description="Credit", value=credit),),
        )

        totals = compute_totals(basket, tax_rate_basis_points=rate)

        taxable = max(0, totals.sub_total - totals.discount_total - totals.promo_code_discount_value) + fee
        assert totals.total == taxable + totals.tax - totals.credit_total
        assert totals.charge_total + totals.pay_later == totals.total
        assert 0 <= totals.pay_later <= sum(deferred for _, _, deferred in lines)
        assert totals.charge_total >= 0

    @pytest.mark.parametrize(
        ("prices", "discounts", "credit", "rate"),
        [
            ([5000], [500], 0, 0),
            ([1200, 800, 4500], [200, 0, 4500], 300, 2000),
            ([999, 1], [999, 1], 10000, 500),
            ([333, 333, 334], [0, 33, 0], 50, 1750),
        ],
    )
    def test_total_matches_invariant(self, prices: list[int], discounts: list[int], credit: int, rate: int) -> None:
        """Test total = sub total - discounts - credit + tax, never negative."""
        basket = Basket(
            id="b",
            items=tuple(
                make_item(str(i), price, discount_value=discount)
                for i, (price, discount) in enumerate(zip(prices, discounts))
            ),
            credit_items=(CreditItem(id="c", description="Credit", value=credit),),
        )

        totals = compute_totals(basket, tax_rate_basis_points=rate)

        assert totals.total >= 0
        assert totals.total == max(0, totals.sub_total - totals.discount_total - totals.credit_total + totals.tax)


class TestPriceBasket:
    """Tests for price_basket."""

    def test_returns_new_priced_basket(self) -> None:
        """Test that aggregates are filled in on a copy."""
        basket = Basket(id="b", items=(make_item("1", 5000, discount_value=500),))

        priced = price_basket(basket)

        assert priced is not basket
        assert basket.total == 0
        assert priced.total == 4500
        assert priced.sub_total == 5000
        assert priced.items == basket.items

    def test_logs_mismatched_supplied_total(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a stale supplied total is replaced and logged."""
        basket = Basket(id="b", items=(make_item("1", 5000),), total=4000)

        with caplog.at_level(logging.WARNING, logger="src.services.pricing"):
            priced = price_basket(basket)

        assert priced.total == 5000
        assert "differs from computed total" in caplog.text


class TestValidateBasket:
    """Tests for validate_basket."""

    def test_valid_basket_passes(self) -> None:
        """Test that validated items pass."""
        validate_basket(Basket(id="b", items=(make_item("1", 5000, discount_value=500),)))

    def test_unvalidated_inconsistent_item_is_rejected(self) -> None:
        """Test items built without validation are re-checked."""
        item = BasketItem.model_construct(
            id="bad",
            course=CourseRef(id="c", name="Glazing"),
            price=5000,
            discount_value=500,
            promo_code_discount_value=None,
            total_price=5000,
        )
        basket = Basket.model_construct(id="b", items=(item,), credit_items=(), fee_items=())

        with pytest.raises(InvalidBasketError) as exc_info:
            validate_basket(basket)

        assert exc_info.value.code == "invalid_basket"
        assert exc_info.value.details["item_id"] == "bad"

    def test_unvalidated_over_deferred_item_is_rejected(self) -> None:
        """Test that a line deferring more than its total price is rejected."""
        item = BasketItem.model_construct(
            id="deposit",
            course=CourseRef(id="c", name="Glazing"),
            price=1000,
            discount_value=None,
            promo_code_discount_value=None,
            total_price=1000,
            pay_later_value=5000,
        )
        basket = Basket.model_construct(id="b", items=(item,), credit_items=(), fee_items=())

        with pytest.raises(InvalidBasketError) as exc_info:
            validate_basket(basket)

        assert exc_info.value.details == {"item_id": "deposit", "pay_later_value": 5000}

    def test_unvalidated_negative_credit_is_rejected(self) -> None:
        """Test that negative credits are rejected."""
        credit = CreditItem.model_construct(id="c", description="Broken", value=-100)
        basket = Basket.model_construct(id="b", items=(), credit_items=(credit,), fee_items=())

        with pytest.raises(InvalidBasketError):
            validate_basket(basket)

    def test_line_total_clamps_at_zero(self) -> None:
        """Test line_total on an unvalidated over-discounted line."""
        item = BasketItem.model_construct(
            id="x", course=CourseRef(id="c", name="c"), price=100, discount_value=300, promo_code_discount_value=None
        )

        assert line_total(item) == 0
