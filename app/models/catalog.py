"""
目录模型模块

商品、优惠码、加购项由目录管理端维护；结账核心只读取，不写入。
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlmodel import Field, SQLModel

from .base import new_id, utc_now


class Product(SQLModel, table=True):
    """
    商品模型

    字段说明：
    - price: 商品价格（Decimal，保证精度）
    - redirect_url: 支付成功后的跳转地址，下单时复制到订单上
    - payment_methods: 该商品启用的支付方式列表，None 表示全部启用
    """
    __tablename__ = "products"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    name: str = Field(max_length=255)
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    price: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    redirect_url: str | None = Field(default=None, max_length=1024)
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    payment_methods: list[str] | None = Field(default=None, sa_column=Column(JSON, nullable=True))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class DiscountCode(SQLModel, table=True):
    """
    优惠码模型

    code 以大写规范形式存储，查询时大小写不敏感。
    max_uses / current_uses 属于目录管理端，结账核心不修改。
    """
    __tablename__ = "coupons"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    code: str = Field(sa_column=Column(String(64), unique=True, index=True, nullable=False))
    discount_type: str = Field(sa_column=Column(String(16), nullable=False))
    discount_value: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    min_order_amount: Decimal = Field(
        default=Decimal("0.00"),
        sa_column=Column(Numeric(10, 2), nullable=False),
    )
    expires_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    max_uses: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    current_uses: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class AddOnOffer(SQLModel, table=True):
    """
    加购项（order bump）模型

    挂在主商品上的可选附加商品，带有独立于优惠码的折扣百分比，
    只作用于加购商品自身的价格。
    """
    __tablename__ = "order_bumps"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    product_id: str = Field(
        sa_column=Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    bump_product_id: str = Field(
        sa_column=Column(String(64), ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    )
    title: str = Field(max_length=255)
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    discount_percentage: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column(Numeric(5, 2), nullable=False),
    )
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
