"""
Redis客户端管理
"""
import redis
from shared.config import settings


def create_redis_client(url: str = None, max_connections: int = 50) -> redis.Redis:
    """
    按 URL 创建带连接池的 Redis 客户端。

    Args:
        url: Redis 连接地址，默认使用 settings.REDIS_URL
        max_connections: 连接池上限
    """
    pool = redis.ConnectionPool.from_url(
        url or settings.REDIS_URL,
        decode_responses=True,
        max_connections=max_connections
    )
    return redis.Redis(connection_pool=pool)
