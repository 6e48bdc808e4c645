"""
外部服务调用限流器

基于 Redis ZSET 实现滑动窗口算法，按外部服务维度限流。
窗口内请求数达到 max_requests 时在发起任何网络请求之前拒绝（429），
被拒绝的请求不计入窗口，窗口过期后自动恢复。

配置（ExternalService.rate_limit_config）:
  - max_requests: 窗口内允许的最大请求数
  - time_window: 窗口大小（秒），默认 60
"""
import math
import time
import uuid
from dataclasses import dataclass
from typing import Dict

# 常量
RATE_LIMIT_PREFIX = "connector_rate_limit:"
DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitResult:
    """限流检查结果"""

    allowed: bool
    limit: int
    remaining: int
    reset: int  # Unix 时间戳（秒）
    retry_after: int = 0  # 距离窗口内最早请求过期的秒数（仅超限时有值）

    @property
    def headers(self) -> Dict[str, str]:
        """生成限流相关的响应头"""
        h: Dict[str, str] = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }
        if not self.allowed:
            h["Retry-After"] = str(self.retry_after)
        return h


class SlidingWindowRateLimiter:
    """
    Redis ZSET 滑动窗口限流器

    Args:
        redis: redis.Redis 客户端（decode_responses=True）
    """

    def __init__(self, redis):
        self.redis = redis

    def check(self, key: str, limit: int, window_seconds: int = DEFAULT_WINDOW_SECONDS) -> RateLimitResult:
        """
        检查并记录一次请求。

        算法:
          1. 获取当前时间戳（毫秒）
          2. 计算窗口起始时间 = 当前时间 - window
          3. 移除 ZSET 中窗口之前的过期成员
          4. 统计当前窗口内的请求数
          5. 如果未超限，添加新成员（score=当前时间戳, member=唯一请求ID）
          6. 设置 key 过期时间为窗口大小（自动清理）

        Args:
            key: 限流维度（如外部服务 ID）
            limit: 窗口内允许的最大请求数
            window_seconds: 窗口大小（秒）

        Returns:
            RateLimitResult
        """
        redis_key = f"{RATE_LIMIT_PREFIX}{key}"
        window_seconds = max(1, int(window_seconds or DEFAULT_WINDOW_SECONDS))

        now_s = time.time()
        now_ms = now_s * 1000
        window_start_ms = now_ms - (window_seconds * 1000)
        reset_timestamp = int(math.ceil(now_s)) + window_seconds

        # 使用 pipeline 减少 Redis 往返
        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(redis_key, 0, window_start_ms)
        pipe.zcard(redis_key)
        results = pipe.execute()
        current_count = results[1]

        if current_count >= limit:
            earliest = self.redis.zrange(redis_key, 0, 0, withscores=True)
            if earliest:
                earliest_ms = earliest[0][1]
                retry_after = max(1, int(math.ceil((earliest_ms + window_seconds * 1000 - now_ms) / 1000)))
            else:
                retry_after = window_seconds

            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset=reset_timestamp,
                retry_after=retry_after,
            )

        request_id = str(uuid.uuid4())
        pipe2 = self.redis.pipeline(transaction=True)
        pipe2.zadd(redis_key, {request_id: now_ms})
        pipe2.expire(redis_key, window_seconds + 1)  # +1s 余量，确保 key 不会提前过期
        pipe2.execute()

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - current_count - 1),
            reset=reset_timestamp,
        )

    def reset(self, key: str) -> None:
        self.redis.delete(f"{RATE_LIMIT_PREFIX}{key}")
