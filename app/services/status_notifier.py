"""
订单状态推送

把已提交的订单状态变更推送给在线订阅者（客户打开的结账页面）。

投递语义：至多一次、不重放。断线的订阅者重连后必须重新读取订单存储
获取当前状态，而不是依赖错过的推送。

两种后端：
- memory: 进程内 asyncio 队列，publish 可以在任意线程调用（线程安全地投递到订阅者的事件循环）
- redis: Redis pub/sub，webhook 和 SSE 连接落在不同进程时使用

publish 永远不抛异常、不阻塞调用方的写路径：失败只记录日志。
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import redis

from app.core.config import settings
from app.core.redis import get_async_redis, get_redis
from app.enums import PaymentOutcome, PaymentStatus
from app.models import utc_now
from app.services.payment_state import to_outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    """推送给客户端的状态事件：{orderId, newStatus}"""
    order_id: str
    status: PaymentStatus
    outcome: PaymentOutcome
    occurred_at: datetime

    @classmethod
    def build(cls, order_id: str, status: PaymentStatus | str) -> StatusEvent:
        status = PaymentStatus(status)
        return cls(order_id=order_id, status=status, outcome=to_outcome(status), occurred_at=utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "status": self.status.value,
            "outcome": self.outcome.value,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusEvent:
        return cls(
            order_id=str(data["order_id"]),
            status=PaymentStatus(data["status"]),
            outcome=PaymentOutcome(data["outcome"]),
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
        )


class MemorySubscription:
    """进程内订阅：一个绑定到订阅者事件循环的队列"""

    def __init__(self, notifier: MemoryStatusNotifier, order_id: str) -> None:
        self.order_id = order_id
        self.loop = asyncio.get_running_loop()
        self.queue: asyncio.Queue[StatusEvent] = asyncio.Queue()
        self._notifier = notifier

    async def get(self, timeout: float | None = None) -> StatusEvent | None:
        """等待下一个事件，超时返回 None"""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self._notifier._discard(self)


class MemoryStatusNotifier:
    """进程内状态推送"""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[MemorySubscription]] = {}
        self._lock = threading.Lock()

    async def subscribe(self, order_id: str) -> MemorySubscription:
        subscription = MemorySubscription(self, order_id)
        with self._lock:
            self._subscribers.setdefault(order_id, set()).add(subscription)
        logger.debug("Status subscriber added for order %s", order_id)
        return subscription

    def _discard(self, subscription: MemorySubscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.order_id)
            if subs is None:
                return
            subs.discard(subscription)
            if not subs:
                del self._subscribers[subscription.order_id]

    def subscriber_count(self, order_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(order_id, ()))

    def publish(self, order_id: str, status: PaymentStatus | str) -> int:
        """
        推送状态变更

        Returns:
            投递到的订阅者数量（0 表示当前没有在线订阅者）
        """
        event = StatusEvent.build(order_id, status)
        with self._lock:
            subs = list(self._subscribers.get(order_id, ()))

        delivered = 0
        for subscription in subs:
            try:
                subscription.loop.call_soon_threadsafe(subscription.queue.put_nowait, event)
                delivered += 1
            except RuntimeError:
                # 订阅者的事件循环已关闭
                self._discard(subscription)
        logger.info("Published status %s for order %s to %d subscriber(s)", event.status.value, order_id, delivered)
        return delivered


class RedisSubscription:
    """Redis pub/sub 订阅，每个订阅独占一个连接"""

    def __init__(self, order_id: str, channel: str) -> None:
        self.order_id = order_id
        self.channel = channel
        self._client = get_async_redis()
        self._pubsub = self._client.pubsub()

    async def start(self) -> None:
        await self._pubsub.subscribe(self.channel)

    async def get(self, timeout: float | None = None) -> StatusEvent | None:
        message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        try:
            return StatusEvent.from_dict(json.loads(message["data"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Dropping malformed status message on %s: %s", self.channel, e)
            return None

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            await self._client.aclose()
        except redis.RedisError as e:
            logger.warning("Error closing status subscription %s: %s", self.channel, e)


class RedisStatusNotifier:
    """基于 Redis pub/sub 的跨进程状态推送"""

    def __init__(self, channel_prefix: str | None = None) -> None:
        self._prefix = channel_prefix or settings.NOTIFIER_CHANNEL_PREFIX

    def channel(self, order_id: str) -> str:
        return f"{self._prefix}:{order_id}"

    async def subscribe(self, order_id: str) -> RedisSubscription:
        subscription = RedisSubscription(order_id, self.channel(order_id))
        await subscription.start()
        return subscription

    def publish(self, order_id: str, status: PaymentStatus | str) -> int:
        event = StatusEvent.build(order_id, status)
        try:
            delivered = int(get_redis().publish(self.channel(order_id), json.dumps(event.to_dict())))
        except redis.RedisError as e:
            logger.warning("Failed to publish status for order %s: %s", order_id, e)
            return 0
        logger.info("Published status %s for order %s to %d subscriber(s)", event.status.value, order_id, delivered)
        return delivered


StatusNotifier = MemoryStatusNotifier | RedisStatusNotifier


@lru_cache(maxsize=1)
def get_status_notifier() -> StatusNotifier:
    """
    获取全局状态推送实例（单例模式）

    后端由 NOTIFIER_BACKEND 配置决定。
    """
    if settings.NOTIFIER_BACKEND == "redis":
        return RedisStatusNotifier()
    return MemoryStatusNotifier()
