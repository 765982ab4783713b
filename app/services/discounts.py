"""
优惠码校验

只读、幂等：同样的输入多次校验得到同样的结果，从不修改使用次数。

拒绝原因按以下顺序检查：
1. 不存在或未激活 -> invalid
2. 已过期（expires_at <= now）-> expired
3. 未达到最低订单金额 -> below_minimum
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlmodel import Session

from app.crud import catalog
from app.enums import DiscountKind, DiscountRejection
from app.models import DiscountCode, as_utc, utc_now
from app.services.pricing import AppliedDiscount, to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountDecision:
    """校验结果：applied 不为空表示可用，否则 rejection 给出原因"""
    code: str
    applied: AppliedDiscount | None = None
    rejection: DiscountRejection | None = None

    @property
    def ok(self) -> bool:
        return self.applied is not None


def evaluate(coupon: DiscountCode | None, *, code: str, subtotal: Decimal, now: datetime) -> DiscountDecision:
    """对已查到的优惠码做规则判断（纯函数）"""
    normalized = catalog.normalize_code(code)
    if coupon is None or not coupon.is_active:
        return DiscountDecision(code=normalized, rejection=DiscountRejection.invalid)

    expires_at = as_utc(coupon.expires_at)
    if expires_at is not None and expires_at <= as_utc(now):
        return DiscountDecision(code=normalized, rejection=DiscountRejection.expired)

    if to_money(coupon.min_order_amount or 0) > to_money(subtotal):
        return DiscountDecision(code=normalized, rejection=DiscountRejection.below_minimum)

    return DiscountDecision(
        code=coupon.code,
        applied=AppliedDiscount(
            code=coupon.code,
            kind=DiscountKind(coupon.discount_type),
            value=Decimal(str(coupon.discount_value)),
        ),
    )


def validate_discount_code(
    *,
    session: Session,
    code: str,
    subtotal: Decimal,
    now: datetime | None = None,
) -> DiscountDecision:
    """
    校验优惠码

    Args:
        session: 数据库会话
        code: 用户输入的优惠码（大小写不敏感）
        subtotal: 当前小计（用于最低订单金额判断）
        now: 当前时间，默认 UTC now

    Returns:
        DiscountDecision
    """
    coupon = catalog.get_discount_code(session=session, code=code)
    decision = evaluate(coupon, code=code, subtotal=subtotal, now=now or utc_now())
    if not decision.ok:
        logger.info("Coupon %s rejected: %s", decision.code, decision.rejection.value if decision.rejection else "")
    return decision
