"""
订单模型模块

定义订单、订单明细和支付尝试记录的数据库模型。
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlmodel import Field, SQLModel

from app.enums import AttemptEventType, PaymentMethod, PaymentStatus

from .base import new_id, utc_now


class Order(SQLModel, table=True):
    """
    订单模型

    一次结账尝试及其金额汇总，是支付状态的唯一事实来源。
    订单 ID 同时作为网关幂等键和 external_reference。

    字段说明：
    - subtotal / discount_amount / total_amount: 金额（Decimal），total = subtotal - discount
    - coupon_code: 使用的优惠码（按 code 引用，不是 ID）
    - payment_status: 支付状态，只能通过条件写入推进（见 crud.orders）
    - gateway_payment_id: 网关支付 ID，网关受理后写入
    - gateway_preference_id: 托管收银台偏好 ID（仅 hosted_checkout）
    - redirect_url: 下单时从商品复制，之后不再变化
    - paid_at: 转为 approved 的时间
    """
    __tablename__ = "orders"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    product_id: str = Field(
        sa_column=Column(String(64), ForeignKey("products.id"), index=True, nullable=False)
    )

    customer_name: str = Field(max_length=255)
    customer_email: str = Field(sa_column=Column(String(255), index=True, nullable=False))
    customer_phone: str | None = Field(default=None, max_length=32)
    customer_document: str | None = Field(default=None, max_length=32)

    subtotal: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    discount_amount: Decimal = Field(
        default=Decimal("0.00"),
        sa_column=Column(Numeric(10, 2), nullable=False),
    )
    total_amount: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    coupon_code: str | None = Field(default=None, max_length=64)

    payment_method: PaymentMethod = Field(sa_column=Column(String(32), nullable=False))
    payment_status: PaymentStatus = Field(
        default=PaymentStatus.pending,
        sa_column=Column(String(16), index=True, nullable=False),
    )
    gateway_payment_id: str | None = Field(
        default=None, sa_column=Column(String(128), index=True, nullable=True)
    )
    gateway_preference_id: str | None = Field(default=None, max_length=128)
    redirect_url: str | None = Field(default=None, max_length=1024)

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    paid_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class OrderItem(SQLModel, table=True):
    """
    订单明细模型

    与订单在同一个事务中创建，之后不再修改。
    unit_price 是下单时的价格快照，目录价格之后变化不影响它。
    """
    __tablename__ = "order_items"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    order_id: str = Field(
        sa_column=Column(String(64), ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    )
    product_id: str = Field(sa_column=Column(String(64), nullable=False))
    quantity: int = Field(default=1, sa_column=Column(Integer, nullable=False, default=1))
    unit_price: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    total_price: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    is_order_bump: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class PaymentAttempt(SQLModel, table=True):
    """
    支付尝试记录模型（只追加）

    记录与网关的每一次交互（创建请求、webhook 投递），用于审计和排查。
    order_id 可为空：指向未知订单的 webhook 也要留痕。
    """
    __tablename__ = "payment_attempts"

    id: str = Field(default_factory=new_id, sa_column=Column(String(64), primary_key=True))
    order_id: str | None = Field(
        default=None, sa_column=Column(String(64), index=True, nullable=True)
    )
    gateway_payment_id: str | None = Field(default=None, max_length=128)
    event_type: AttemptEventType = Field(sa_column=Column(String(32), nullable=False))
    payment_status: PaymentStatus | None = Field(
        default=None, sa_column=Column(String(16), nullable=True)
    )
    raw_status: str | None = Field(default=None, max_length=64)
    payload: dict | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
