"""
Redis 连接模块

入站事件监听器订阅 guardian:issue:new 所用的客户端。进程内单例，lifespan 关闭时释放。
"""
from typing import Optional

import redis.asyncio as redis

from guardian.core.config import settings
from guardian.core.logging import get_logger

logger = get_logger(__name__)

_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """获取 Redis 客户端，首次调用时创建。"""
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)
        logger.info("Redis client created for %s:%d", settings.redis_host, settings.redis_port)
    return _client


async def redis_healthy() -> bool:
    """监听器启用时供 /health 使用，连接失败返回 False。"""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except (redis.RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
