"""
基础模型模块

定义所有模型共用的基础类和工具函数。
"""
import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel


def utc_now() -> datetime:
    """
    获取当前 UTC 时间

    Returns:
        当前 UTC 时区的日期时间对象
    """
    return datetime.now(timezone.utc)


def new_id() -> str:
    """
    生成不透明的唯一 ID（32 位十六进制字符串）

    订单 ID 同时作为网关幂等键和 external_reference，
    因此使用不可猜测、与数据库无关的 UUID，而不是自增主键。
    """
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    """
    把数据库读出的时间统一为带时区的 UTC 时间

    部分驱动（如 SQLite）会丢失时区信息，比较前需要补上。
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# 导出 SQLModel 供其他模块使用
__all__ = ["SQLModel", "utc_now", "new_id", "as_utc"]
