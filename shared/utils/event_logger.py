"""
事件日志工具模块

带缓冲、分级的持久化审计日志：
  - 级别有序 debug < info < warning < error < critical，低于最低级别的事件直接丢弃
  - 缓冲区满（默认 50 条）、调度器每轮结束、应用关闭时写入 event_logs 表
  - 每条事件同时写入 Python logging（logger 名 event_log）
  - 自动订阅事件总线上的生命周期事件
"""
import csv
import json
import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError

from shared.database import session_scope
from shared.models.system import EventLog
from shared.utils.security import sanitize_filename

logger = logging.getLogger("event_log")

LEVEL_DEBUG = "debug"
LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"
LEVEL_CRITICAL = "critical"

LEVEL_PRIORITY = {
    LEVEL_DEBUG: 0,
    LEVEL_INFO: 1,
    LEVEL_WARNING: 2,
    LEVEL_ERROR: 3,
    LEVEL_CRITICAL: 4,
}

# Python logging 对应级别
_PY_LEVELS = {
    LEVEL_DEBUG: logging.DEBUG,
    LEVEL_INFO: logging.INFO,
    LEVEL_WARNING: logging.WARNING,
    LEVEL_ERROR: logging.ERROR,
    LEVEL_CRITICAL: logging.CRITICAL,
}

CATEGORY_SYSTEM = "system"
CATEGORY_ENDPOINT = "endpoint"
CATEGORY_WEBHOOK = "webhook"
CATEGORY_ETL = "etl"
CATEGORY_SECURITY = "security"
CATEGORY_USER = "user"
CATEGORY_EXTERNAL = "external"
CATEGORY_SCHEDULER = "scheduler"

CATEGORIES = [
    CATEGORY_SYSTEM, CATEGORY_ENDPOINT, CATEGORY_WEBHOOK, CATEGORY_ETL,
    CATEGORY_SECURITY, CATEGORY_USER, CATEGORY_EXTERNAL, CATEGORY_SCHEDULER,
]

DEFAULT_BUFFER_LIMIT = 50
# 数据库不可用时缓冲区最多保留 buffer_limit * MAX_BUFFERED_BATCHES 条
MAX_BUFFERED_BATCHES = 20
MAX_PER_PAGE = 100

EXPORT_COLUMNS = [
    "id", "level", "category", "message", "context", "user_id", "ip_address",
    "user_agent", "request_uri", "request_method", "created_at",
]


def _event_to_dict(event: EventLog) -> Dict[str, Any]:
    return {
        "id": str(event.id),
        "level": event.level,
        "category": event.category,
        "message": event.message,
        "context": event.context,
        "user_id": event.user_id,
        "ip_address": event.ip_address,
        "user_agent": event.user_agent,
        "request_uri": event.request_uri,
        "request_method": event.request_method,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


class EventLogger:
    """
    事件日志写入与查询

    Args:
        session_factory: SQLAlchemy sessionmaker
        min_level: 最低记录级别
        buffer_limit: 缓冲条数上限，达到后自动 flush
    """

    def __init__(self, session_factory, min_level: str = LEVEL_INFO, buffer_limit: int = DEFAULT_BUFFER_LIMIT):
        self.session_factory = session_factory
        self.min_level = min_level if min_level in LEVEL_PRIORITY else LEVEL_INFO
        self.buffer_limit = buffer_limit
        self._buffer: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # 写入
    # ------------------------------------------------------------------

    def should_log(self, level: str) -> bool:
        return LEVEL_PRIORITY.get(level, 0) >= LEVEL_PRIORITY[self.min_level]

    def log(
        self,
        category: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        level: str = LEVEL_INFO,
        request=None,
        user_id: Optional[str] = None,
    ) -> bool:
        """
        记录事件。

        Args:
            category: 事件分类
            message: 事件描述
            context: 附加上下文（需可 JSON 序列化）
            level: 事件级别
            request: 可选的 InboundRequest，用于补充 IP / UA / URI
            user_id: 操作者标识

        Returns:
            是否进入缓冲（低于最低级别时返回 False）
        """
        if level not in LEVEL_PRIORITY:
            level = LEVEL_INFO
        if not self.should_log(level):
            return False

        event = {
            "level": level,
            "level_value": LEVEL_PRIORITY[level],
            "category": category,
            "message": message,
            "context": json.loads(json.dumps(context or {}, default=str)),
            "user_id": user_id,
            "ip_address": None,
            "user_agent": None,
            "request_uri": None,
            "request_method": None,
            "created_at": datetime.utcnow(),
        }
        if request is not None:
            event["ip_address"] = request.client_ip
            event["user_agent"] = (request.header("user-agent") or "")[:500] or None
            event["request_uri"] = request.path[:500]
            event["request_method"] = request.method

        logger.log(_PY_LEVELS[level], "[%s] %s | context=%s", category, message, event["context"])

        with self._lock:
            self._buffer.append(event)
            full = len(self._buffer) >= self.buffer_limit
        if full:
            self.flush()
        return True

    def debug(self, category: str, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
        return self.log(category, message, context, LEVEL_DEBUG, **kwargs)

    def info(self, category: str, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
        return self.log(category, message, context, LEVEL_INFO, **kwargs)

    def warning(self, category: str, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
        return self.log(category, message, context, LEVEL_WARNING, **kwargs)

    def error(self, category: str, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
        return self.log(category, message, context, LEVEL_ERROR, **kwargs)

    def critical(self, category: str, message: str, context: Optional[Dict[str, Any]] = None, **kwargs) -> bool:
        return self.log(category, message, context, LEVEL_CRITICAL, **kwargs)

    def flush(self) -> int:
        """
        把缓冲写入数据库。

        Returns:
            写入条数
        """
        with self._lock:
            pending, self._buffer = self._buffer, []
        if not pending:
            return 0
        try:
            with session_scope(self.session_factory) as db:
                db.add_all([EventLog(**event) for event in pending])
        except SQLAlchemyError as e:
            # 写入失败的事件放回缓冲区头部，下次 flush 重试
            with self._lock:
                self._buffer = (pending + self._buffer)[-self.buffer_limit * MAX_BUFFERED_BATCHES:]
            logger.error("Event log flush failed | pending=%s | error=%s", len(pending), e)
            return 0
        return len(pending)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def set_min_level(self, level: str, settings_store=None) -> None:
        """调整最低级别，传入 settings_store 时同时持久化到 log_level"""
        if level not in LEVEL_PRIORITY:
            return
        self.min_level = level
        if settings_store is not None:
            settings_store.set("log_level", level)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def _apply_filters(self, query, filters: Dict[str, Any]):
        if filters.get("category"):
            query = query.filter(EventLog.category == filters["category"])
        if filters.get("level"):
            query = query.filter(EventLog.level == filters["level"])
        if filters.get("min_level") in LEVEL_PRIORITY:
            query = query.filter(EventLog.level_value >= LEVEL_PRIORITY[filters["min_level"]])
        if filters.get("from"):
            query = query.filter(EventLog.created_at >= filters["from"])
        if filters.get("to"):
            query = query.filter(EventLog.created_at <= filters["to"])
        if filters.get("user_id"):
            query = query.filter(EventLog.user_id == str(filters["user_id"]))
        if filters.get("search"):
            like = f"%{filters['search']}%"
            query = query.filter(or_(EventLog.message.like(like), EventLog.category.like(like)))
        return query

    def get_events(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        分页查询事件。

        Args:
            filters: category/level/min_level/from/to/user_id/search/page/per_page

        Returns:
            {"items", "total", "page", "per_page"}
        """
        filters = filters or {}
        page = max(1, int(filters.get("page") or 1))
        per_page = min(MAX_PER_PAGE, max(1, int(filters.get("per_page") or 50)))
        self.flush()
        with session_scope(self.session_factory) as db:
            query = self._apply_filters(db.query(EventLog), filters)
            total = query.count()
            rows = (
                query.order_by(EventLog.created_at.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            items = [_event_to_dict(row) for row in rows]
        return {"items": items, "total": total, "page": page, "per_page": per_page}

    def get_statistics(self, period: str = "today") -> Dict[str, Any]:
        """按时间段统计事件数量（today/week/month/all）"""
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        since = {
            "today": today,
            "week": today - timedelta(days=7),
            "month": today - timedelta(days=30),
        }.get(period, datetime(1970, 1, 1))

        self.flush()
        with session_scope(self.session_factory) as db:
            base = db.query(EventLog).filter(EventLog.created_at >= since)
            total = base.count()
            by_level = dict(
                db.query(EventLog.level, func.count(EventLog.id))
                .filter(EventLog.created_at >= since)
                .group_by(EventLog.level)
                .all()
            )
            by_category = dict(
                db.query(EventLog.category, func.count(EventLog.id))
                .filter(EventLog.created_at >= since)
                .group_by(EventLog.category)
                .all()
            )
            recent_errors = [
                _event_to_dict(row)
                for row in base.filter(EventLog.level.in_([LEVEL_ERROR, LEVEL_CRITICAL]))
                .order_by(EventLog.created_at.desc())
                .limit(10)
                .all()
            ]
        return {
            "period": period,
            "total": total,
            "by_level": by_level,
            "by_category": by_category,
            "recent_errors": recent_errors,
        }

    def cleanup(self, days_old: int = 90) -> int:
        """
        删除早于 days_old 天的事件，critical 级别保留。

        Returns:
            删除条数
        """
        cutoff = datetime.utcnow() - timedelta(days=days_old)
        self.flush()
        with session_scope(self.session_factory) as db:
            deleted = (
                db.query(EventLog)
                .filter(EventLog.created_at < cutoff, EventLog.level != LEVEL_CRITICAL)
                .delete(synchronize_session=False)
            )
        self.info(CATEGORY_SYSTEM, "Event log cleanup completed", {"deleted_count": deleted, "days_old": days_old})
        return deleted

    def export(
        self,
        export_dir: str,
        base_url: str,
        filters: Optional[Dict[str, Any]] = None,
        fmt: str = "json",
    ) -> Dict[str, Any]:
        """
        导出事件到 JSON 或 CSV 文件。

        Returns:
            {"filename", "path", "url", "count", "size"}
        """
        fmt = "csv" if fmt == "csv" else "json"
        self.flush()
        with session_scope(self.session_factory) as db:
            query = self._apply_filters(db.query(EventLog), filters or {})
            events = [_event_to_dict(row) for row in query.order_by(EventLog.created_at.desc()).limit(10000).all()]

        os.makedirs(export_dir, exist_ok=True)
        filename = sanitize_filename(f"event-log-{datetime.utcnow().strftime('%Y-%m-%d-%H%M%S')}.{fmt}")
        path = os.path.join(export_dir, filename)

        if fmt == "csv":
            with open(path, "w", newline="", encoding="utf-8") as fp:
                writer = csv.DictWriter(fp, fieldnames=EXPORT_COLUMNS)
                writer.writeheader()
                for event in events:
                    row = dict(event)
                    row["context"] = json.dumps(row["context"], ensure_ascii=False)
                    writer.writerow(row)
        else:
            with open(path, "w", encoding="utf-8") as fp:
                json.dump(events, fp, indent=2, ensure_ascii=False)

        return {
            "filename": filename,
            "path": path,
            "url": f"{base_url.rstrip('/')}/{filename}",
            "count": len(events),
            "size": os.path.getsize(path),
        }

    # ------------------------------------------------------------------
    # 事件总线自动记录
    # ------------------------------------------------------------------

    def register_bus_hooks(self, bus) -> None:
        """订阅生命周期事件并写入事件日志"""
        bus.on("endpoint.created", lambda endpoint_id, data: self.info(
            CATEGORY_ENDPOINT, "Endpoint created",
            {"endpoint_id": endpoint_id, "name": data.get("name", ""), "slug": data.get("slug", "")},
        ))
        bus.on("endpoint.updated", lambda endpoint_id, data: self.info(
            CATEGORY_ENDPOINT, "Endpoint updated", {"endpoint_id": endpoint_id},
        ))
        bus.on("endpoint.deleted", lambda endpoint_id: self.info(
            CATEGORY_ENDPOINT, "Endpoint deleted", {"endpoint_id": endpoint_id},
        ))
        bus.on("webhook.received", lambda payload, definition, request, log_id: self.debug(
            CATEGORY_WEBHOOK, "Webhook received",
            {"webhook_log_id": log_id, "endpoint_id": definition.get("id"), "endpoint_name": definition.get("name", "")},
            request=request,
        ))
        bus.on("etl.job_completed", lambda job_id, template_id, result: self.info(
            CATEGORY_ETL, "ETL job completed",
            {"job_id": job_id, "template_id": template_id, "success": bool(result.get("success"))},
        ))
        bus.on("etl.job_failed", lambda job_id, template_id, error: self.error(
            CATEGORY_ETL, "ETL job failed", {"job_id": job_id, "template_id": template_id, "error": error},
        ))
        bus.on("external.request", lambda service_id, url, method, result: self.debug(
            CATEGORY_EXTERNAL, "External API request",
            {"service_id": service_id, "url": url, "method": method,
             "response_code": result.code, "success": result.success},
        ))
        bus.on("task.executed", lambda task_id, result: self.info(
            CATEGORY_SCHEDULER, "Scheduled task executed",
            {"task_id": task_id, "success": bool(result.get("success"))},
        ))
