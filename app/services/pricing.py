"""
定价引擎

纯函数，不做任何 I/O。根据主商品价格、选中的加购项和优惠码决策
计算小计、折扣和总价。

金额一律使用 Decimal，按货币最小单位（分）以 ROUND_HALF_UP 取整：
- 加购项行价 = round(加购商品价格 × (1 - 加购折扣% / 100))，同时作为明细的单价快照
- 小计 = 主商品价格 + Σ 加购项行价
- 百分比折扣 = round(小计 × pct / 100)；固定金额折扣 = min(面额, 小计)
- 总价 = 小计 - 折扣，永远不会为负

报价接口和下单接口调用同一个函数，展示金额和实际扣款金额不会出现偏差。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from app.enums import DiscountKind

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def to_money(value: Decimal | int | str) -> Decimal:
    """转换为两位小数的金额（ROUND_HALF_UP）"""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AddOnSelection:
    """一个被选中的加购项：加购商品原价 + 加购折扣百分比"""
    offer_id: str
    product_id: str
    price: Decimal
    discount_percentage: Decimal = ZERO


@dataclass(frozen=True)
class AppliedDiscount:
    """优惠码校验通过后交给定价引擎的决策"""
    code: str
    kind: DiscountKind
    value: Decimal


@dataclass(frozen=True)
class PriceLine:
    product_id: str
    unit_price: Decimal
    is_add_on: bool
    offer_id: str | None = None


@dataclass(frozen=True)
class PriceBreakdown:
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    lines: tuple[PriceLine, ...] = field(default_factory=tuple)


def add_on_price(selection: AddOnSelection) -> Decimal:
    """加购项折后价（取整到分）"""
    pct = Decimal(str(selection.discount_percentage))
    if pct < 0 or pct > HUNDRED:
        raise ValueError(f"Add-on discount percentage out of range: {pct}")
    return to_money(Decimal(str(selection.price)) * (HUNDRED - pct) / HUNDRED)


def discount_amount(subtotal: Decimal, decision: AppliedDiscount | None) -> Decimal:
    """根据优惠码决策计算折扣，结果始终落在 [0, subtotal] 区间"""
    if decision is None:
        return ZERO
    value = Decimal(str(decision.value))
    if value <= 0:
        return ZERO
    if decision.kind == DiscountKind.percentage:
        discount = to_money(subtotal * min(value, HUNDRED) / HUNDRED)
    else:
        discount = to_money(value)
    return min(discount, subtotal)


def price(
    base_price: Decimal,
    add_ons: list[AddOnSelection] | tuple[AddOnSelection, ...] = (),
    decision: AppliedDiscount | None = None,
    *,
    base_product_id: str = "",
) -> PriceBreakdown:
    """
    计算订单金额

    Args:
        base_price: 主商品价格
        add_ons: 选中的加购项
        decision: 优惠码决策（None 表示没有可用优惠）
        base_product_id: 主商品 ID（仅用于生成明细行）

    Returns:
        PriceBreakdown: 小计、折扣、总价和明细行
    """
    base = to_money(base_price)
    if base < 0:
        raise ValueError("Base price must be non-negative")

    lines = [PriceLine(product_id=base_product_id, unit_price=base, is_add_on=False)]
    for selection in add_ons:
        lines.append(
            PriceLine(
                product_id=selection.product_id,
                unit_price=add_on_price(selection),
                is_add_on=True,
                offer_id=selection.offer_id,
            )
        )

    subtotal = to_money(sum((line.unit_price for line in lines), ZERO))
    discount = discount_amount(subtotal, decision)
    total = to_money(subtotal - discount)
    return PriceBreakdown(subtotal=subtotal, discount=discount, total=total, lines=tuple(lines))
