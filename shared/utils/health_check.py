"""
系统健康检查工具

检查数据库与 Redis 的连通性，供管理 API 的 system/health 使用。
"""
from typing import Dict, Any
from datetime import datetime
import time

from sqlalchemy import text


def _failure(component: str, error: Exception, start_time: float) -> Dict[str, Any]:
    return {
        "status": "unhealthy",
        "message": f"{component}连接失败: {error}",
        "response_time": round((time.time() - start_time) * 1000, 2),
        "details": {
            "error": str(error),
            "checked_at": datetime.utcnow().isoformat()
        }
    }


def check_database_health(engine) -> Dict[str, Any]:
    """
    检查数据库连接健康状态

    Args:
        engine: SQLAlchemy 引擎

    Returns:
        健康状态字典，包含：
        - status: "healthy" 或 "unhealthy"
        - message: 状态消息
        - response_time: 响应时间（毫秒）
        - details: 详细信息
    """
    start_time = time.time()
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1")).fetchone()
    except Exception as e:
        return _failure("数据库", e, start_time)

    return {
        "status": "healthy",
        "message": "数据库连接正常",
        "response_time": round((time.time() - start_time) * 1000, 2),
        "details": {
            "dialect": engine.dialect.name,
            "database": engine.url.database,
            "checked_at": datetime.utcnow().isoformat()
        }
    }


def check_redis_health(redis_client) -> Dict[str, Any]:
    """
    检查 Redis 连接健康状态

    Args:
        redis_client: redis.Redis 客户端
    """
    start_time = time.time()
    try:
        if not redis_client.ping():
            raise ConnectionError("Redis PING返回False")
        info = redis_client.info()
    except Exception as e:
        return _failure("Redis", e, start_time)

    return {
        "status": "healthy",
        "message": "Redis连接正常",
        "response_time": round((time.time() - start_time) * 1000, 2),
        "details": {
            "redis_version": info.get("redis_version"),
            "connected_clients": info.get("connected_clients"),
            "used_memory_human": info.get("used_memory_human"),
            "checked_at": datetime.utcnow().isoformat()
        }
    }


def check_overall_health(engine, redis_client) -> Dict[str, Any]:
    """
    检查整体系统健康状态

    Returns:
        整体健康状态字典，包含：
        - status: "healthy", "degraded" 或 "unhealthy"
        - message: 状态消息
        - timestamp: 检查时间
        - components: 各组件健康状态
    """
    components = {
        "database": check_database_health(engine),
        "redis": check_redis_health(redis_client),
    }

    healthy_count = sum(1 for comp in components.values() if comp["status"] == "healthy")
    total_count = len(components)

    if healthy_count == total_count:
        overall_status = "healthy"
        overall_message = "所有组件运行正常"
    elif healthy_count > 0:
        overall_status = "degraded"
        overall_message = f"{healthy_count}/{total_count} 组件运行正常"
    else:
        overall_status = "unhealthy"
        overall_message = "所有组件都不可用"

    return {
        "status": overall_status,
        "message": overall_message,
        "timestamp": datetime.utcnow().isoformat(),
        "components": components
    }
