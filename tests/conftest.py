"""
Pytest配置文件

- Hypothesis 配置
- FakeRedis：覆盖限流器与 OAuth2 令牌缓存用到的 Redis 命令
- context 夹具：每个测试一个 SQLite 文件数据库 + FakeRedis + httpx.MockTransport
"""
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import pytest
from hypothesis import settings, HealthCheck
from sqlalchemy.orm import sessionmaker

from shared.config import Settings
from shared.context import build_context
from shared.database import Base, create_db_engine
import shared.models  # noqa: F401

# 配置Hypothesis
settings.register_profile(
    "default",
    max_examples=100,  # 每个属性测试至少100次迭代
    deadline=None,  # 禁用超时限制
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture]
)
settings.load_profile("default")


MANAGEMENT_KEY = "test-management-key"


class FakePipeline:
    """按顺序缓存命令，execute 时依次执行"""

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        results = [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.commands]
        self.commands = []
        return results


class FakeRedis:
    """内存实现的 Redis 子集（字符串与有序集合）"""

    def __init__(self):
        self.strings = {}
        self.zsets = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def ping(self):
        return True

    def info(self):
        return {"redis_version": "7.0.0", "connected_clients": 1, "used_memory_human": "1M"}

    def get(self, key):
        return self.strings.get(key)

    def setex(self, key, ttl, value):
        self.strings[key] = value
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.strings.pop(key, None) is not None)
            removed += int(self.zsets.pop(key, None) is not None)
        return removed

    def expire(self, key, seconds):
        return key in self.zsets or key in self.strings

    def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zremrangebyscore(self, key, min_score, max_score):
        zset = self.zsets.get(key, {})
        doomed = [m for m, score in zset.items() if min_score <= score <= max_score]
        for member in doomed:
            del zset[member]
        return len(doomed)

    def zrange(self, key, start, end, withscores=False):
        items = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        end = len(items) if end == -1 else end + 1
        selected = items[start:end]
        return selected if withscores else [member for member, _ in selected]


class Upstream:
    """外部服务桩：handler(request) -> httpx.Response，记录收到的请求"""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, json={"ok": True})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def app_settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'platform.db'}",
        DEBUG=False,
        MANAGEMENT_API_KEYS=[MANAGEMENT_KEY],
        EXPORT_DIR=str(tmp_path / "exports"),
        EXPORT_BASE_URL="http://testserver/exports",
    )


@pytest.fixture
def context(app_settings, fake_redis, upstream):
    """完整装配的应用上下文，退避等待被替换为记录调用"""
    engine = create_db_engine(app_settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    http_client = httpx.Client(transport=httpx.MockTransport(upstream))

    ctx = build_context(
        settings=app_settings,
        engine=engine,
        session_factory=session_factory,
        redis=fake_redis,
        http_client=http_client,
    )
    ctx.sleeps = []
    ctx.connector.sleep = ctx.sleeps.append
    try:
        yield ctx
    finally:
        ctx.close()
        Base.metadata.drop_all(bind=engine)
