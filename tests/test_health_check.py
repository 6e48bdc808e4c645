"""
系统健康检查测试

测试健康检查功能，验证：
- 数据库连接检查
- Redis连接检查
- 整体健康状态（healthy / degraded / unhealthy）
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from unittest.mock import patch, MagicMock

from shared.utils.health_check import (
    check_database_health,
    check_redis_health,
    check_overall_health
)


def _status(value):
    return {"status": value, "message": "", "response_time": 0.1, "details": {}}


def test_check_database_health_success(context):
    """
    测试数据库健康检查 - 成功情况

    验证：
    - 返回healthy状态
    - 包含响应时间
    - 包含数据库方言
    """
    result = check_database_health(context.engine)

    assert result["status"] == "healthy"
    assert result["message"] == "数据库连接正常"
    assert result["response_time"] >= 0
    assert result["details"]["dialect"] == "sqlite"


def test_check_database_health_failure():
    """测试数据库健康检查 - 连接失败"""
    engine = MagicMock()
    engine.connect.side_effect = Exception("Connection refused")

    result = check_database_health(engine)

    assert result["status"] == "unhealthy"
    assert "数据库连接失败" in result["message"]
    assert result["details"]["error"] == "Connection refused"


def test_check_redis_health_success():
    """测试Redis健康检查 - 成功情况"""
    client = MagicMock()
    client.ping.return_value = True
    client.info.return_value = {
        "redis_version": "7.0.0",
        "connected_clients": 3,
        "used_memory_human": "1.00M",
    }

    result = check_redis_health(client)

    assert result["status"] == "healthy"
    assert result["details"]["redis_version"] == "7.0.0"
    assert result["details"]["connected_clients"] == 3


def test_check_redis_health_failure():
    """测试Redis健康检查 - PING 失败"""
    client = MagicMock()
    client.ping.return_value = False

    result = check_redis_health(client)

    assert result["status"] == "unhealthy"
    assert "Redis连接失败" in result["message"]


def test_check_overall_health_all_healthy():
    with patch('shared.utils.health_check.check_database_health') as mock_db, \
         patch('shared.utils.health_check.check_redis_health') as mock_redis:
        mock_db.return_value = _status("healthy")
        mock_redis.return_value = _status("healthy")

        result = check_overall_health(MagicMock(), MagicMock())

    assert result["status"] == "healthy"
    assert result["message"] == "所有组件运行正常"
    assert set(result["components"]) == {"database", "redis"}


def test_check_overall_health_degraded():
    with patch('shared.utils.health_check.check_database_health') as mock_db, \
         patch('shared.utils.health_check.check_redis_health') as mock_redis:
        mock_db.return_value = _status("healthy")
        mock_redis.return_value = _status("unhealthy")

        result = check_overall_health(MagicMock(), MagicMock())

    assert result["status"] == "degraded"
    assert result["message"] == "1/2 组件运行正常"


def test_check_overall_health_all_unhealthy():
    with patch('shared.utils.health_check.check_database_health') as mock_db, \
         patch('shared.utils.health_check.check_redis_health') as mock_redis:
        mock_db.return_value = _status("unhealthy")
        mock_redis.return_value = _status("unhealthy")

        result = check_overall_health(MagicMock(), MagicMock())

    assert result["status"] == "unhealthy"
    assert result["message"] == "所有组件都不可用"
