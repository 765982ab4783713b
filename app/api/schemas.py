"""
API 请求/响应数据模型（Schema）

定义所有 API 接口的请求和响应数据结构。
使用 Pydantic 进行数据验证和序列化。

关键概念：
- BaseModel: Pydantic 的模型基类，用于数据验证
- Field: 字段验证器，定义字段的约束（长度、范围等）
- 这些模型不是数据库表，只用于 API 数据交换
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal  # 精确数值类型，用于金额
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.enums import (
    DiscountKind,
    DiscountRejection,
    PaymentMethod,
    PaymentOutcome,
    PaymentStatus,
)

# ============================================================
# 通用响应模型
# ============================================================


class ApiEnvelope(BaseModel):
    """
    API 统一响应格式

    所有 API 响应都使用这个格式，包含：
    - code: 状态码（0 表示成功，非 0 表示错误）
    - message: 消息（成功时为 "success"，错误时为错误描述）
    - data: 数据（成功时返回业务数据，错误时为 None）

    示例响应：
        {"code": 0, "message": "success", "data": {...}}
        {"code": 404101, "message": "Product not found", "data": None}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# 结账请求
# ============================================================


class CustomerInfo(BaseModel):
    """
    客户信息

    姓名和邮箱对所有支付方式都必填；
    税号（document）对银行卡和延期凭证必填，即时转账可选（仅用于收据）。
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = Field(default=None, max_length=32)
    document: str | None = Field(default=None, max_length=32)


class CardData(BaseModel):
    """
    银行卡数据

    只转发给网关，不落库。两位年份按 20xx 处理。
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    number: str = Field(pattern=r"^[0-9 ]{12,23}$")
    holder_name: str = Field(min_length=1, max_length=255)
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int = Field(ge=0, le=9999)
    cvv: str = Field(pattern=r"^[0-9]{3,4}$")

    @field_validator("expiry_year")
    @classmethod
    def _four_digit_year(cls, v: int) -> int:
        return v + 2000 if v < 100 else v


class CheckoutRequest(BaseModel):
    """
    结账提交请求

    order_id 可由客户端生成并在重试时复用，作为幂等键：
    同一个 order_id 重复提交不会产生第二个订单，也不会产生第二笔扣款。

    subtotal / discount / total 是客户端展示的金额，仅用于比对，
    服务端总是重新计算。
    """
    order_id: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_-]{8,64}$")
    product_id: str = Field(min_length=1, max_length=64)
    customer: CustomerInfo
    selected_add_on_ids: list[str] = Field(default_factory=list, max_length=50)
    coupon_code: str | None = Field(default=None, max_length=64)
    payment_method: PaymentMethod
    card: CardData | None = None
    installments: int = Field(default=1, ge=1, le=12)
    subtotal: Decimal | None = None
    discount: Decimal | None = None
    total: Decimal | None = None


class QuoteRequest(BaseModel):
    """报价请求：页面上每次选择变化都调用，和下单使用同一个定价函数"""
    product_id: str = Field(min_length=1, max_length=64)
    selected_add_on_ids: list[str] = Field(default_factory=list, max_length=50)
    coupon_code: str | None = Field(default=None, max_length=64)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    subtotal: Decimal = Field(ge=0)


# ============================================================
# 结账响应
# ============================================================


class AddOnOfferData(BaseModel):
    """加购项展示数据"""
    id: str
    title: str
    description: str | None = None
    product_id: str
    price: Decimal  # 加购商品原价
    discount_percentage: Decimal
    discounted_price: Decimal  # 折后价（与下单时的单价快照一致）


class ProductCheckoutData(BaseModel):
    """结账页商品数据：商品 + 可用加购项 + 启用的支付方式"""
    id: str
    name: str
    description: str | None = None
    price: Decimal
    payment_methods: list[PaymentMethod]
    add_ons: list[AddOnOfferData]


class PriceLineData(BaseModel):
    product_id: str
    offer_id: str | None = None
    unit_price: Decimal
    is_add_on: bool


class QuoteData(BaseModel):
    """
    报价结果

    coupon_rejection 不为空时表示优惠码未生效，金额按无优惠计算。
    """
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_code: str | None = None
    coupon_rejection: DiscountRejection | None = None
    lines: list[PriceLineData]


class CouponValidateData(BaseModel):
    code: str
    valid: bool
    reason: DiscountRejection | None = None
    discount_type: DiscountKind | None = None
    discount_value: Decimal | None = None
    discount: Decimal | None = None  # 按请求中的小计计算出的折扣金额


class InstantTransferData(BaseModel):
    """即时转账：二维码图片 + 可复制的支付串"""
    qr_code: str | None = None
    qr_code_base64: str | None = None
    ticket_url: str | None = None


class VoucherData(BaseModel):
    """延期凭证：凭证文档地址 + 条码"""
    pdf_url: str | None = None
    barcode: str | None = None


class HostedCheckoutData(BaseModel):
    """托管收银台：客户跳转到 checkout_url 完成支付"""
    preference_id: str
    checkout_url: str


class PaymentResultData(BaseModel):
    """
    下单结果

    outcome 是面向客户的结果（processing / approved / failed）；
    网关调用未完成时 gateway_payment_id 为空，outcome 为 processing。
    """
    order_id: str
    gateway_payment_id: str | None = None
    status: PaymentStatus
    outcome: PaymentOutcome
    payment_method: PaymentMethod
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    instant_transfer: InstantTransferData | None = None
    voucher: VoucherData | None = None
    hosted_checkout: HostedCheckoutData | None = None


class OrderStatusData(BaseModel):
    """
    订单状态（轮询 / 断线重连时读取）

    redirect_url 只在订单已支付（approved）时返回。
    """
    order_id: str
    status: PaymentStatus
    outcome: PaymentOutcome
    payment_method: PaymentMethod
    gateway_payment_id: str | None = None
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    coupon_code: str | None = None
    redirect_url: str | None = None
    created_at: datetime
    updated_at: datetime
    paid_at: datetime | None = None
