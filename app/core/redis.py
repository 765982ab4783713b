"""
Redis 连接模块

管理 Redis 客户端连接，使用单例模式确保全局只有一个连接实例。
在本服务中 Redis 只用于订单状态推送（pub/sub），跨进程把
webhook 所在进程的状态变更送到持有 SSE 连接的进程。

使用 @lru_cache 装饰器实现单例模式，避免重复创建连接。
"""
from __future__ import annotations

from functools import lru_cache

import redis
from redis.asyncio import Redis as AsyncRedis

from app.core.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    获取同步 Redis 客户端实例（单例模式）

    用于发布状态消息。socket 超时很短：推送是尽力而为的，
    不能拖慢 webhook 的写路径。
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_timeout=2,
        socket_connect_timeout=2,
    )


def get_async_redis() -> AsyncRedis:
    """
    创建异步 Redis 客户端

    每个 SSE 订阅持有一个独立的 pub/sub 连接，用完由调用方关闭，
    因此这里不做缓存。
    """
    return AsyncRedis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
    )
