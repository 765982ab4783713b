from __future__ import annotations

import itertools
from decimal import Decimal

import pytest

from app.enums import DiscountKind
from app.services import pricing
from app.services.pricing import AddOnSelection, AppliedDiscount


def _bump(price: str, pct: str, offer_id: str = "o1") -> AddOnSelection:
    return AddOnSelection(offer_id=offer_id, product_id=f"p_{offer_id}", price=Decimal(price), discount_percentage=Decimal(pct))


def test_base_plus_discounted_bump_with_percentage_coupon():
    result = pricing.price(
        Decimal("100.00"),
        [_bump("50.00", "20")],
        AppliedDiscount(code="SAVE10", kind=DiscountKind.percentage, value=Decimal("10")),
        base_product_id="p_main",
    )
    assert result.subtotal == Decimal("140.00")
    assert result.discount == Decimal("14.00")
    assert result.total == Decimal("126.00")
    assert [line.unit_price for line in result.lines] == [Decimal("100.00"), Decimal("40.00")]
    assert result.lines[0].is_add_on is False
    assert result.lines[1].is_add_on is True
    assert result.lines[1].offer_id == "o1"


def test_fixed_discount_larger_than_subtotal_clamps_total_to_zero():
    result = pricing.price(
        Decimal("30.00"),
        decision=AppliedDiscount(code="BIG", kind=DiscountKind.fixed, value=Decimal("50")),
    )
    assert result.discount == Decimal("30.00")
    assert result.total == Decimal("0.00")


def test_add_on_line_rounds_half_up_to_cents():
    # 9.99 * 0.85 = 8.4915 -> 8.49 ; 0.05 * 0.5 = 0.025 -> 0.03
    assert pricing.add_on_price(_bump("9.99", "15")) == Decimal("8.49")
    assert pricing.add_on_price(_bump("0.05", "50")) == Decimal("0.03")


def test_percentage_discount_rounds_half_up():
    # 10.05 * 5% = 0.5025 -> 0.50 ; 10.10 * 5% = 0.505 -> 0.51
    d = AppliedDiscount(code="C", kind=DiscountKind.percentage, value=Decimal("5"))
    assert pricing.discount_amount(Decimal("10.05"), d) == Decimal("0.50")
    assert pricing.discount_amount(Decimal("10.10"), d) == Decimal("0.51")


def test_no_or_non_positive_discount_is_zero():
    assert pricing.discount_amount(Decimal("10.00"), None) == Decimal("0.00")
    zero = AppliedDiscount(code="Z", kind=DiscountKind.fixed, value=Decimal("0"))
    assert pricing.discount_amount(Decimal("10.00"), zero) == Decimal("0.00")


def test_percentage_over_hundred_is_capped():
    d = AppliedDiscount(code="ALL", kind=DiscountKind.percentage, value=Decimal("150"))
    result = pricing.price(Decimal("80.00"), decision=d)
    assert result.discount == Decimal("80.00")
    assert result.total == Decimal("0.00")


def test_add_on_percentage_out_of_range_raises():
    with pytest.raises(ValueError):
        pricing.add_on_price(_bump("10.00", "101"))
    with pytest.raises(ValueError):
        pricing.add_on_price(_bump("10.00", "-1"))


def test_negative_base_price_raises():
    with pytest.raises(ValueError):
        pricing.price(Decimal("-1.00"))


def test_totals_invariants_over_combinations():
    bases = ["0.00", "0.01", "19.99", "100.00", "1234.56"]
    bumps = [[], [_bump("50.00", "20", "a")], [_bump("9.99", "33.33", "a"), _bump("0.10", "0", "b")]]
    decisions = [
        None,
        AppliedDiscount(code="P", kind=DiscountKind.percentage, value=Decimal("12.5")),
        AppliedDiscount(code="P100", kind=DiscountKind.percentage, value=Decimal("100")),
        AppliedDiscount(code="F", kind=DiscountKind.fixed, value=Decimal("5.55")),
        AppliedDiscount(code="F", kind=DiscountKind.fixed, value=Decimal("99999")),
    ]
    for base, selected, decision in itertools.product(bases, bumps, decisions):
        result = pricing.price(Decimal(base), selected, decision)
        assert Decimal("0") <= result.discount <= result.subtotal
        assert result.total == result.subtotal - result.discount
        assert result.total >= 0
        assert result.subtotal == sum((line.unit_price for line in result.lines), Decimal("0"))
        for value in (result.subtotal, result.discount, result.total):
            assert value == value.quantize(Decimal("0.01"))

        # Summation order does not matter.
        reversed_result = pricing.price(Decimal(base), list(reversed(selected)), decision)
        assert reversed_result.total == result.total
