"""
FastAPI 依赖注入模块

提供可复用的依赖项，用于路由处理函数中。
FastAPI 的依赖注入系统会自动处理这些依赖的创建和注入。

关键概念：
- Depends: FastAPI 的依赖注入装饰器
- Generator: 用于创建需要清理的资源（如数据库会话）
- 测试中通过 app.dependency_overrides 替换网关和状态推送
"""
import json
import logging
from collections.abc import Generator  # 生成器类型，用于资源管理
from typing import Annotated, Any  # 类型注解，用于依赖注入

from fastapi import Depends, Request  # FastAPI 核心功能
from sqlmodel import Session  # 数据库会话

from app.core.db import engine
from app.integrations.payment_gateway import PaymentGatewayClient, payment_gateway_client
from app.services.status_notifier import StatusNotifier, get_status_notifier

logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    获取数据库会话（依赖注入）

    这是一个生成器函数，使用 yield 确保会话在使用后自动关闭。
    FastAPI 会在请求处理完成后自动调用生成器的清理逻辑。

    Yields:
        Session: 数据库会话对象
    """
    with Session(engine) as session:
        yield session  # yield 确保会话在请求结束后自动关闭


def get_gateway() -> PaymentGatewayClient:
    """获取支付网关客户端"""
    return payment_gateway_client


def get_notifier() -> StatusNotifier:
    """获取订单状态推送实例"""
    return get_status_notifier()


async def get_webhook_payload(request: Request) -> dict[str, Any] | None:
    """
    读取 webhook 请求体

    webhook 必须总是返回 200，所以这里不让 FastAPI 做请求体校验：
    空体、非 JSON、非对象都返回 None，由对账逻辑按格式错误处理。
    """
    raw = await request.body()
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("Webhook body is not valid JSON")
        return None
    return data if isinstance(data, dict) else None


# 类型别名，简化依赖注入的写法
SessionDep = Annotated[Session, Depends(get_db)]  # 数据库会话依赖
GatewayDep = Annotated[PaymentGatewayClient, Depends(get_gateway)]  # 支付网关依赖
NotifierDep = Annotated[StatusNotifier, Depends(get_notifier)]  # 状态推送依赖
WebhookPayloadDep = Annotated[dict[str, Any] | None, Depends(get_webhook_payload)]  # webhook 请求体
