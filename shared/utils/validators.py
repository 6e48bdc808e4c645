"""
验证工具模块
"""
import re
import uuid
from typing import Any, Dict, Iterable, Optional

from shared.errors import NotFound, ValidationError


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """
    把字符串/UUID 转为 uuid.UUID，格式非法返回 None

    Args:
        value: 待转换的值

    Returns:
        uuid.UUID 或 None
    """
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return None


def require_uuid(value: Any, label: str = "id") -> uuid.UUID:
    """
    转换 ID，格式非法时按不存在处理

    Raises:
        NotFound: ID 格式非法
    """
    parsed = parse_uuid(value)
    if parsed is None:
        raise NotFound(f"{label} not found: {value}")
    return parsed


def require_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    """
    检查必填字段

    Raises:
        ValidationError: 任一字段缺失或为空
    """
    missing = [f for f in fields if data.get(f) in (None, "", [], {})]
    if missing:
        raise ValidationError("Missing required fields: " + ", ".join(missing))


def slugify(value: str) -> str:
    """
    规范化端点 slug：小写，非字母数字字符替换为 -，合并连续的 -

    Args:
        value: 原始 slug

    Returns:
        规范化后的 slug
    """
    slug = re.sub(r"[^a-z0-9_-]+", "-", (value or "").strip().lower())
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def validate_route_pattern(route: str) -> tuple[bool, Optional[str]]:
    """
    验证路由模式，只允许路径字符与 {param} 占位符

    Args:
        route: 如 /{order_id}/items

    Returns:
        (是否有效, 错误消息)
    """
    if not route:
        return True, None
    if not re.match(r"^[A-Za-z0-9_\-/{}.]*$", route):
        return False, "路由只能包含字母、数字、-、_、/ 与 {param}"
    for name in re.findall(r"\{([^}]*)\}", route):
        if not re.match(r"^\w+$", name):
            return False, f"路由参数名无效: {name}"
    return True, None


def validate_url(url: str) -> tuple[bool, Optional[str]]:
    """
    验证外部服务 base_url

    Returns:
        (是否有效, 错误消息)
    """
    if not url:
        return False, "URL不能为空"
    if not re.match(r"^https?://[^\s/$.?#].[^\s]*$", url, re.IGNORECASE):
        return False, "URL格式无效"
    return True, None
