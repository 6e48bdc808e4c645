"""
配置存储

带默认值与类型校验的运行期键值配置，持久化在 system_settings 表。
进程内缓存在首次读取时加载，set/delete/reset/import 后同步更新。

类型:
  bool                 接受 true/false/1/0/yes/no/on/off
  int                  可选 min/max
  float
  string               可选 enum/pattern
  array                JSON 字符串会被解码，标量包装为单元素列表
  json                 任意可 JSON 序列化的值
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.database import session_scope
from shared.errors import ValidationError
from shared.models.system import SystemSetting

logger = logging.getLogger(__name__)

LOG_LEVELS = ["debug", "info", "warning", "error", "critical"]

DEFAULTS: Dict[str, Any] = {
    # 系统
    "system_enabled": True,
    "maintenance_mode": False,
    "debug_mode": False,
    "log_level": "info",

    # 端点
    "max_endpoints": 100,
    "default_permission": "public",
    "rate_limit_enabled": False,
    "rate_limit_requests": 100,
    "rate_limit_window": 60,

    # Webhook
    "webhook_log_retention": 30,
    "webhook_max_payload_size": 1048576,  # 1MB
    "webhook_signature_required": False,
    "webhook_auto_retry": True,
    "webhook_max_retries": 3,

    # ETL
    "etl_job_retention": 30,
    "etl_max_concurrent_jobs": 5,
    "etl_timeout": 300,
    "etl_batch_size": 100,

    # 外部服务
    "external_default_timeout": 30,
    "external_max_retries": 3,
    "external_health_check_interval": 3600,

    # 调度器
    "scheduler_enabled": True,
    "scheduler_max_tasks_per_run": 10,
    "scheduler_stale_after": 3600,

    # 安全
    "api_key_header": "X-API-Key",
    "allowed_origins": [],
    "ip_whitelist": [],
    "ip_blacklist": [],
}

SCHEMA: Dict[str, Dict[str, Any]] = {
    "system_enabled": {"type": "bool"},
    "maintenance_mode": {"type": "bool"},
    "debug_mode": {"type": "bool"},
    "log_level": {"type": "string", "enum": LOG_LEVELS},
    "max_endpoints": {"type": "int", "min": 1, "max": 1000},
    "default_permission": {
        "type": "string",
        "enum": ["public", "signature", "api_key", "token", "ip_whitelist", "custom"],
    },
    "rate_limit_enabled": {"type": "bool"},
    "rate_limit_requests": {"type": "int", "min": 1, "max": 10000},
    "rate_limit_window": {"type": "int", "min": 1, "max": 3600},
    "webhook_log_retention": {"type": "int", "min": 1, "max": 365},
    "webhook_max_payload_size": {"type": "int", "min": 1024, "max": 52428800},
    "webhook_signature_required": {"type": "bool"},
    "webhook_auto_retry": {"type": "bool"},
    "webhook_max_retries": {"type": "int", "min": 0, "max": 20},
    "etl_job_retention": {"type": "int", "min": 1, "max": 365},
    "etl_max_concurrent_jobs": {"type": "int", "min": 1, "max": 100},
    "etl_timeout": {"type": "int", "min": 10, "max": 3600},
    "etl_batch_size": {"type": "int", "min": 1, "max": 10000},
    "external_default_timeout": {"type": "int", "min": 1, "max": 300},
    "external_max_retries": {"type": "int", "min": 0, "max": 10},
    "external_health_check_interval": {"type": "int", "min": 60, "max": 86400},
    "scheduler_enabled": {"type": "bool"},
    "scheduler_max_tasks_per_run": {"type": "int", "min": 1, "max": 100},
    "scheduler_stale_after": {"type": "int", "min": 60, "max": 86400},
    "api_key_header": {"type": "string", "pattern": r"^[A-Za-z0-9-]+$"},
    "allowed_origins": {"type": "array"},
    "ip_whitelist": {"type": "array"},
    "ip_blacklist": {"type": "array"},
}

GROUPS: Dict[str, List[str]] = {
    "system": ["system_enabled", "maintenance_mode", "debug_mode", "log_level"],
    "endpoints": ["max_endpoints", "default_permission", "rate_limit_enabled",
                  "rate_limit_requests", "rate_limit_window"],
    "webhooks": ["webhook_log_retention", "webhook_max_payload_size", "webhook_signature_required",
                 "webhook_auto_retry", "webhook_max_retries"],
    "etl": ["etl_job_retention", "etl_max_concurrent_jobs", "etl_timeout", "etl_batch_size"],
    "external_services": ["external_default_timeout", "external_max_retries",
                          "external_health_check_interval"],
    "scheduler": ["scheduler_enabled", "scheduler_max_tasks_per_run", "scheduler_stale_after"],
    "security": ["api_key_header", "allowed_origins", "ip_whitelist", "ip_blacklist"],
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def validate_value(key: str, value: Any, schema: Optional[Dict[str, Any]] = None) -> Tuple[bool, Any, Optional[str]]:
    """
    按 schema 校验并转换配置值。

    Args:
        key: 配置键
        value: 待校验的值
        schema: 字段 schema，为 None 时视为无约束

    Returns:
        (是否有效, 转换后的值, 错误消息)
    """
    if not schema:
        return True, value, None

    kind = schema.get("type", "string")

    if kind == "bool":
        if isinstance(value, bool):
            return True, value, None
        if isinstance(value, (int, float)):
            return True, bool(value), None
        normalized = str(value).strip().lower()
        if normalized in _TRUE:
            return True, True, None
        if normalized in _FALSE:
            return True, False, None
        return False, value, f"{key} must be a boolean"

    if kind == "int":
        if isinstance(value, bool):
            return False, value, f"{key} must be an integer"
        try:
            value = int(value)
        except (TypeError, ValueError):
            return False, value, f"{key} must be an integer"
        if "min" in schema and value < schema["min"]:
            return False, value, f"Value must be at least {schema['min']}"
        if "max" in schema and value > schema["max"]:
            return False, value, f"Value must be at most {schema['max']}"
        return True, value, None

    if kind == "float":
        try:
            return True, float(value), None
        except (TypeError, ValueError):
            return False, value, f"{key} must be a number"

    if kind == "string":
        value = "" if value is None else str(value)
        if "enum" in schema and value not in schema["enum"]:
            return False, value, "Value must be one of: " + ", ".join(schema["enum"])
        if "pattern" in schema and not re.match(schema["pattern"], value):
            return False, value, "Value does not match required pattern"
        return True, value, None

    if kind == "array":
        if isinstance(value, (list, tuple)):
            return True, list(value), None
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except ValueError:
                decoded = None
            if isinstance(decoded, list):
                return True, decoded, None
            return True, [value] if value else [], None
        if value is None:
            return True, [], None
        return True, [value], None

    if kind == "json":
        if isinstance(value, str):
            try:
                return True, json.loads(value), None
            except ValueError:
                return False, value, f"{key} must be valid JSON"
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            return False, value, f"{key} must be JSON serializable"
        return True, value, None

    return True, value, None


class SettingsStore:
    """
    运行期配置存储

    Args:
        session_factory: SQLAlchemy sessionmaker
        debug_override: 为 True 时 is_debug() 恒为真（环境变量 DEBUG）
    """

    def __init__(self, session_factory, debug_override: bool = False):
        self.session_factory = session_factory
        self.debug_override = debug_override
        self.defaults: Dict[str, Any] = dict(DEFAULTS)
        self.schema: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in SCHEMA.items()}
        self._cache: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # 缓存
    # ------------------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        if self._cache is None:
            with session_scope(self.session_factory) as db:
                rows = db.query(SystemSetting).all()
                self._cache = {row.key: row.value for row in rows}
        return self._cache

    def clear_cache(self) -> None:
        self._cache = None

    def _persist(self, values: Dict[str, Any], deleted: Iterable[str] = ()) -> None:
        with session_scope(self.session_factory) as db:
            for key, value in values.items():
                row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
                if row is None:
                    db.add(SystemSetting(key=key, value=value))
                else:
                    row.value = value
            deleted = list(deleted)
            if deleted:
                db.query(SystemSetting).filter(SystemSetting.key.in_(deleted)).delete(synchronize_session=False)

    # ------------------------------------------------------------------
    # 读写
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        values = self._load()
        if key in values:
            return values[key]
        if default is not None:
            return default
        return self.defaults.get(key)

    def validate(self, key: str, value: Any) -> Tuple[bool, Any, Optional[str]]:
        return validate_value(key, value, self.schema.get(key))

    def set(self, key: str, value: Any) -> Any:
        """
        校验后写入配置。

        Returns:
            转换后的值

        Raises:
            ValidationError: 值不符合 schema
        """
        valid, value, error = self.validate(key, value)
        if not valid:
            raise ValidationError(f"Invalid value for {key}: {error}")
        self._persist({key: value})
        self._load()[key] = value
        logger.info("Setting updated | key=%s", key)
        return value

    def set_many(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """批量写入，任一值无效则全部不写入"""
        converted = {}
        errors = {}
        for key, value in values.items():
            valid, new_value, error = self.validate(key, value)
            if valid:
                converted[key] = new_value
            else:
                errors[key] = error
        if errors:
            raise ValidationError("Invalid settings", data=errors)
        self._persist(converted)
        self._load().update(converted)
        return converted

    def delete(self, key: str) -> bool:
        values = self._load()
        existed = key in values
        self._persist({}, deleted=[key])
        values.pop(key, None)
        return existed

    def has(self, key: str) -> bool:
        return key in self._load() or key in self.defaults

    def get_all(self, include_defaults: bool = True) -> Dict[str, Any]:
        stored = dict(self._load())
        if not include_defaults:
            return stored
        merged = dict(self.defaults)
        merged.update(stored)
        return merged

    def reset(self, keys: Optional[List[str]] = None) -> None:
        """恢复默认值；keys 为空时重置全部"""
        stored = self._load()
        targets = list(stored) if keys is None else [k for k in keys if k in stored]
        self._persist({}, deleted=targets)
        for key in targets:
            stored.pop(key, None)

    # ------------------------------------------------------------------
    # 导入导出
    # ------------------------------------------------------------------

    def export(self) -> str:
        return json.dumps(self.get_all(include_defaults=False), indent=2, ensure_ascii=False, default=str)

    def import_settings(self, payload: str, merge: bool = True) -> Dict[str, Any]:
        """
        从 JSON 导入配置。

        Args:
            payload: JSON 字符串（对象）
            merge: False 时先清空现有配置
        """
        try:
            data = json.loads(payload)
        except ValueError:
            raise ValidationError("Invalid JSON") from None
        if not isinstance(data, dict):
            raise ValidationError("Settings JSON must be an object")
        if not merge:
            self.reset()
        return self.set_many(data)

    # ------------------------------------------------------------------
    # 扩展与分组
    # ------------------------------------------------------------------

    def register(self, key: str, default: Any, schema: Optional[Dict[str, Any]] = None) -> None:
        """注册扩展配置项（默认值与 schema）"""
        self.defaults[key] = default
        if schema:
            self.schema[key] = dict(schema)

    def get_default(self, key: str) -> Any:
        return self.defaults.get(key)

    def get_grouped(self) -> Dict[str, Dict[str, Any]]:
        values = self.get_all()
        return {group: {key: values.get(key) for key in keys} for group, keys in GROUPS.items()}

    def is_enabled(self) -> bool:
        return bool(self.get("system_enabled"))

    def is_maintenance(self) -> bool:
        return bool(self.get("maintenance_mode"))

    def is_debug(self) -> bool:
        return self.debug_override or bool(self.get("debug_mode"))
