"""
ETL 加载阶段

load_config.destination:
  external_service  经连接器发送（endpoint_path / method，服务取模板或 load_config 的 external_service_id）
  database          insert / update（按数据中的 id）到 table_name
  action            触发总线事件 action_name（默认 etl_load），结果可被 etl_load_result:<name> 过滤器覆盖
  file              写 JSON / CSV 到导出目录，返回公开 URL

所有目标返回 {"destination", "success", ...}；未知目标抛出 ValueError。
"""
import csv
import io
import json
import logging
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, List

from shared.utils.security import sanitize_filename

logger = logging.getLogger(__name__)


class LoadDestination(str, Enum):
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    ACTION = "action"
    FILE = "file"


def rows_to_csv(data: Any) -> str:
    """字典或字典列表转 CSV，表头为所有行键的并集（按出现顺序）"""
    if not data:
        return ""
    rows: List[Dict[str, Any]] = data if isinstance(data, list) else [data]
    rows = [row if isinstance(row, dict) else {"value": row} for row in rows]
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns)
    writer.writeheader()
    for row in rows:
        writer.writerow({
            k: json.dumps(v, ensure_ascii=False) if isinstance(v, (dict, list)) else v
            for k, v in row.items()
        })
    return buffer.getvalue()


class Loader:
    """
    加载阶段

    Args:
        context: AppContext（connector / database / bus / settings）
    """

    def __init__(self, context):
        self.context = context
        self._destinations: Dict[LoadDestination, Callable[[Any, Dict[str, Any], Dict[str, Any]], Dict[str, Any]]] = {
            LoadDestination.EXTERNAL_SERVICE: self.to_external_service,
            LoadDestination.DATABASE: self.to_database,
            LoadDestination.ACTION: self.to_action,
            LoadDestination.FILE: self.to_file,
        }

    def run(self, data: Any, template: Dict[str, Any]) -> Dict[str, Any]:
        config = template.get("load_config") or {}
        name = config.get("destination") or LoadDestination.EXTERNAL_SERVICE.value
        try:
            destination = LoadDestination(name)
        except ValueError:
            raise ValueError(f"Unknown load destination: {name}") from None
        return self._destinations[destination](data, template, config)

    def to_external_service(self, data: Any, template: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        service_id = template.get("external_service_id") or config.get("external_service_id")
        if not service_id:
            raise ValueError("No external service configured for load")

        payload = data if isinstance(data, dict) else {"data": data}
        options = {k: config[k] for k in ("headers", "timeout", "content_type") if k in config}
        result = self.context.connector.send(
            service_id,
            config.get("endpoint_path") or "",
            payload,
            config.get("method") or "POST",
            options,
        )
        return {
            "destination": LoadDestination.EXTERNAL_SERVICE.value,
            "service_id": str(service_id),
            "success": result.success,
            "response_code": result.code,
            "response_body": result.body,
        }

    def to_database(self, data: Any, template: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        table_name = config.get("table_name")
        if not table_name:
            raise ValueError("No table name configured for database load")
        if not isinstance(data, dict):
            raise ValueError("Database load requires a single record")

        operation = config.get("operation") or "insert"
        database = self.context.database
        if operation == "insert":
            result = database.insert_row(table_name, data)
        elif operation == "update":
            if data.get("id") is None:
                raise ValueError("Database update requires an id field")
            result = database.update_row(table_name, data["id"], data)
        else:
            raise ValueError(f"Unknown database operation: {operation}")

        return {
            "destination": LoadDestination.DATABASE.value,
            "table": table_name,
            "operation": operation,
            "success": result.ok,
            "message": result.message,
            "data": result.data,
        }

    def to_action(self, data: Any, template: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        action_name = config.get("action_name") or "etl_load"
        bus = self.context.bus
        bus.emit(action_name, data, template, config)
        result = bus.apply_filters(
            f"etl_load_result:{action_name}",
            {"success": True, "message": "Action executed"},
            data,
            template,
        )
        return {
            "destination": LoadDestination.ACTION.value,
            "action": action_name,
            "success": bool(result.get("success", True)) if isinstance(result, dict) else True,
            "result": result,
        }

    def to_file(self, data: Any, template: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.context.settings
        fmt = config.get("format") or "json"
        export_dir = os.path.join(settings.EXPORT_DIR, "etl")
        os.makedirs(export_dir, exist_ok=True)

        filename = sanitize_filename(config.get("filename") or f"etl-output-{int(time.time())}.{fmt}")
        if not filename:
            raise ValueError("Invalid export filename")
        path = os.path.join(export_dir, filename)

        if fmt == "csv":
            content = rows_to_csv(data)
        else:
            content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        encoded = content.encode("utf-8")
        with open(path, "wb") as fp:
            fp.write(encoded)
        written = len(encoded)

        logger.info("ETL output written | path=%s | bytes=%s", path, written)
        return {
            "destination": LoadDestination.FILE.value,
            "path": path,
            "url": f"{settings.EXPORT_BASE_URL.rstrip('/')}/etl/{filename}",
            "success": True,
            "bytes_written": written,
        }
