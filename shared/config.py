"""
配置管理模块

进程级环境配置（数据库、Redis、JWT、导出目录等），通过 .env 或环境变量覆盖。
运行期可由运维调整的业务配置（维护模式、日志级别、限流默认值等）
保存在配置存储中，见 shared/settings_store.py。
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """应用配置"""

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./endpoint_platform.db"

    # Redis配置（限流窗口、OAuth2 令牌缓存）
    REDIS_URL: str = "redis://localhost:6379/0"

    # JWT配置（token 权限类型与管理 API 的 Bearer 认证）
    JWT_SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # 应用配置
    APP_NAME: str = "Dynamic Endpoint Platform"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 自定义端点挂载的基础路由，完整路径为 {BASE_API_ROUTE}/custom/{slug}[/{route}]
    BASE_API_ROUTE: str = "/api/v1"

    # 管理 API 的静态 API Key（请求头 X-API-Key）
    MANAGEMENT_API_KEYS: List[str] = []

    # CORS配置
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ETL 文件导出
    EXPORT_DIR: str = "./exports"
    EXPORT_BASE_URL: str = "http://localhost:8000/exports"

    # 外部服务调用默认超时（秒）
    HTTP_DEFAULT_TIMEOUT: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
