"""
数据库模型定义模块

本模块使用 SQLModel 定义所有数据库表结构。

模型按功能拆分：
- catalog.py: 目录模型（商品、优惠码、加购项），结账核心只读
- order.py: 订单、订单明细、支付尝试记录
"""
from sqlmodel import SQLModel

from .base import as_utc, new_id, utc_now
from .catalog import AddOnOffer, DiscountCode, Product
from .order import Order, OrderItem, PaymentAttempt

__all__ = [
    "SQLModel",
    "utc_now",
    "new_id",
    "as_utc",
    "Product",
    "DiscountCode",
    "AddOnOffer",
    "Order",
    "OrderItem",
    "PaymentAttempt",
]
