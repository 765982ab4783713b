"""
订单状态 SSE 流

流总是以订单存储中的当前状态开始（断线重连时重新推导），
之后转发状态推送；收到终态后关闭，空闲时发送注释行保活。
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

from app.services.payment_state import is_terminal
from app.services.status_notifier import StatusEvent

logger = logging.getLogger(__name__)

KEEPALIVE_COMMENT = ": keep-alive\n\n"


class Subscription(Protocol):
    async def get(self, timeout: float | None = None) -> StatusEvent | None: ...

    async def close(self) -> None: ...


def format_sse_event(event_type: str, data: dict[str, Any], event_id: str | None = None) -> str:
    """按 SSE 格式输出一条事件"""
    lines = []
    if event_type:
        lines.append(f"event: {event_type}")
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    lines.append("")
    lines.append("")
    return "\n".join(lines)


async def status_event_stream(
    subscription: Subscription,
    initial: dict[str, Any],
    *,
    keepalive_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """
    生成状态事件流

    Args:
        subscription: 已建立的订阅（在读取初始状态之前建立，避免漏掉中间的推送）
        initial: 从订单存储读取的当前状态
        keepalive_seconds: 空闲多久发送一次保活注释
        is_disconnected: 客户端断开检测
    """
    order_id = initial.get("order_id")
    try:
        yield format_sse_event("status", initial)
        if is_terminal(initial["status"]):
            return
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.debug("Status stream client disconnected: order=%s", order_id)
                return
            event = await subscription.get(timeout=keepalive_seconds)
            if event is None:
                yield KEEPALIVE_COMMENT
                continue
            yield format_sse_event("status", event.to_dict())
            if is_terminal(event.status):
                return
    finally:
        await subscription.close()
