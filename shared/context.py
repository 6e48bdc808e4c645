"""
应用上下文

进程级的组件装配点：数据库引擎与会话工厂、Redis、HTTP 客户端、事件总线、
配置存储、事件日志、回调注册表以及各业务组件。
组件构造时接收 context，不使用模块级单例；测试中通过 build_context 传入
SQLite 会话工厂与假 Redis 客户端。
"""
import logging
from typing import Any, Callable, Optional

import httpx

from services.connector.connector import ExternalServiceConnector
from services.endpoint.actions import ActionExecutor
from services.endpoint.dispatcher import Dispatcher
from services.endpoint.permissions import PermissionResolver, TokenValidator
from services.endpoint.registry import EndpointRegistry
from services.endpoint.system import SystemManager
from services.etl.engine import ETLEngine
from services.scheduler.scheduler import Scheduler
from services.webhook.receiver import WebhookReceiver
from shared.config import Settings, settings as default_settings
from shared.database import create_db_engine, create_session_factory
from shared.events import EventBus
from shared.persistence import Database
from shared.redis_client import create_redis_client
from shared.registry import CallbackRegistry
from shared.settings_store import SettingsStore
from shared.utils.event_logger import EventLogger

logger = logging.getLogger(__name__)


class AppContext:
    """持有所有共享资源与组件，由 build_context 构造"""

    def __init__(self, settings: Settings, engine, session_factory, redis, http_client: httpx.Client):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.redis = redis
        self.http_client = http_client

        self.bus = EventBus()
        self.settings_store = SettingsStore(session_factory, debug_override=settings.DEBUG)
        self.event_logger = EventLogger(session_factory)
        self.database = Database(engine)

        self.callbacks: CallbackRegistry[Callable[..., Any]] = CallbackRegistry("Script callback")
        self.transformers: CallbackRegistry[Callable[..., Any]] = CallbackRegistry("Transformer")
        self.task_handlers: CallbackRegistry[Callable[..., Any]] = CallbackRegistry("Task handler")

        self.token_validator = TokenValidator()
        self.permissions = PermissionResolver(self.bus, self.token_validator)
        self.connector = ExternalServiceConnector(self)
        self.actions = ActionExecutor(self)
        self.actions.register_builtin_handlers()
        self.etl = ETLEngine(self)
        self.webhooks = WebhookReceiver(self)
        self.registry = EndpointRegistry(self)
        self.dispatcher = Dispatcher(self)
        self.scheduler = Scheduler(self)
        self.system = SystemManager(self)

    def close(self) -> None:
        """写入剩余事件日志并释放连接"""
        self.event_logger.flush()
        self.http_client.close()
        self.engine.dispose()


def build_context(
    settings: Optional[Settings] = None,
    engine=None,
    session_factory=None,
    redis=None,
    http_client: Optional[httpx.Client] = None,
) -> AppContext:
    """
    构造应用上下文。

    Args:
        settings: 环境配置，默认使用 shared.config.settings
        engine: SQLAlchemy 引擎，默认按 DATABASE_URL 创建
        session_factory: 会话工厂，默认绑定到 engine
        redis: Redis 客户端，默认按 REDIS_URL 创建
        http_client: 出站 httpx.Client，默认按 HTTP_DEFAULT_TIMEOUT 创建

    Returns:
        AppContext
    """
    settings = settings or default_settings
    if engine is None:
        engine = create_db_engine(settings.DATABASE_URL)
    if session_factory is None:
        session_factory = create_session_factory(engine)
    if redis is None:
        redis = create_redis_client(settings.REDIS_URL)
    if http_client is None:
        http_client = httpx.Client(timeout=settings.HTTP_DEFAULT_TIMEOUT)

    context = AppContext(settings, engine, session_factory, redis, http_client)
    context.event_logger.register_bus_hooks(context.bus)
    context.event_logger.set_min_level(context.settings_store.get("log_level"))

    logger.info("Application context built | database=%s", engine.url.drivername)
    return context
