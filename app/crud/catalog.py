"""目录只读查询（商品、加购项、优惠码），以及供种子数据 / 测试使用的创建函数"""
from datetime import datetime
from decimal import Decimal

from sqlmodel import Session, col, select

from app.enums import DiscountKind, PaymentMethod
from app.models import AddOnOffer, DiscountCode, Product


def normalize_code(code: str) -> str:
    """优惠码规范形式：去空白、大写"""
    return code.strip().upper()


def get_product(*, session: Session, product_id: str) -> Product | None:
    return session.get(Product, product_id)


def list_active_add_ons(
    *, session: Session, product_id: str, offer_ids: list[str] | None = None
) -> list[tuple[AddOnOffer, Product]]:
    """
    解析主商品当前可用的加购项

    加购项本身和它指向的加购商品都必须处于激活状态。
    offer_ids 不为 None 时只返回其中被选中的项。
    """
    stmt = (
        select(AddOnOffer, Product)
        .join(Product, col(Product.id) == col(AddOnOffer.bump_product_id))
        .where(AddOnOffer.product_id == product_id)
        .where(AddOnOffer.is_active == True)  # noqa: E712
        .where(Product.is_active == True)  # noqa: E712
        .order_by(AddOnOffer.created_at)
    )
    if offer_ids is not None:
        if not offer_ids:
            return []
        stmt = stmt.where(col(AddOnOffer.id).in_(offer_ids))
    return list(session.exec(stmt).all())


def get_discount_code(*, session: Session, code: str) -> DiscountCode | None:
    stmt = select(DiscountCode).where(DiscountCode.code == normalize_code(code))
    return session.exec(stmt).first()


def create_product(
    *,
    session: Session,
    name: str,
    price: Decimal,
    redirect_url: str | None = None,
    is_active: bool = True,
    payment_methods: list[PaymentMethod] | None = None,
    description: str | None = None,
) -> Product:
    product = Product(
        name=name,
        price=price,
        redirect_url=redirect_url,
        is_active=is_active,
        payment_methods=[m.value for m in payment_methods] if payment_methods is not None else None,
        description=description,
    )
    session.add(product)
    session.commit()
    session.refresh(product)
    return product


def create_add_on(
    *,
    session: Session,
    product_id: str,
    bump_product_id: str,
    title: str,
    discount_percentage: Decimal = Decimal("0"),
    is_active: bool = True,
    description: str | None = None,
) -> AddOnOffer:
    offer = AddOnOffer(
        product_id=product_id,
        bump_product_id=bump_product_id,
        title=title,
        description=description,
        discount_percentage=discount_percentage,
        is_active=is_active,
    )
    session.add(offer)
    session.commit()
    session.refresh(offer)
    return offer


def create_discount_code(
    *,
    session: Session,
    code: str,
    kind: DiscountKind,
    value: Decimal,
    min_order_amount: Decimal = Decimal("0.00"),
    expires_at: datetime | None = None,
    is_active: bool = True,
) -> DiscountCode:
    coupon = DiscountCode(
        code=normalize_code(code),
        discount_type=kind.value,
        discount_value=value,
        min_order_amount=min_order_amount,
        expires_at=expires_at,
        is_active=is_active,
    )
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    return coupon
