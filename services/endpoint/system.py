"""
系统状态与维护模式

提供管理 API 的 system/status、system/health、system/statistics，
以及维护模式的开启与关闭（写入配置存储并记录 system 类事件）。
"""
import logging
import time
from datetime import datetime, time as dt_time
from typing import Any, Dict, Optional

from shared.database import session_scope
from shared.models import (
    CustomEndpoint,
    ETLJob,
    ETLTemplate,
    EventLog,
    ExternalService,
    ScheduledTask,
    WebhookLog,
)
from shared.utils.event_logger import CATEGORY_SYSTEM
from shared.utils.health_check import check_overall_health

logger = logging.getLogger(__name__)


class SystemManager:
    """
    系统管理

    Args:
        context: AppContext（settings / settings_store / engine / redis / registry / event_logger）
    """

    def __init__(self, context):
        self.context = context
        self.started_at = time.time()

    def status(self) -> Dict[str, Any]:
        store = self.context.settings_store
        return {
            "system_enabled": store.is_enabled(),
            "maintenance_mode": store.is_maintenance(),
            "debug_mode": store.is_debug(),
            "version": self.context.settings.APP_VERSION,
            "uptime": int(time.time() - self.started_at),
            "registered_routes": len(self.context.registry.bindings),
        }

    def health(self) -> Dict[str, Any]:
        return check_overall_health(self.context.engine, self.context.redis)

    def statistics(self) -> Dict[str, Any]:
        """各表总数与今日新增数"""
        today = datetime.combine(datetime.utcnow().date(), dt_time.min)
        with session_scope(self.context.session_factory) as db:
            return {
                "endpoints": db.query(CustomEndpoint).count(),
                "active_endpoints": db.query(CustomEndpoint).filter(CustomEndpoint.is_active.is_(True)).count(),
                "webhook_logs": db.query(WebhookLog).count(),
                "webhook_logs_today": db.query(WebhookLog).filter(WebhookLog.created_at >= today).count(),
                "etl_templates": db.query(ETLTemplate).count(),
                "etl_jobs": db.query(ETLJob).count(),
                "etl_jobs_today": db.query(ETLJob).filter(ETLJob.created_at >= today).count(),
                "external_services": db.query(ExternalService).count(),
                "events_today": db.query(EventLog).filter(EventLog.created_at >= today).count(),
                "scheduled_tasks": db.query(ScheduledTask).count(),
            }

    def enable_maintenance(self, reason: Optional[str] = None) -> Dict[str, Any]:
        self.context.settings_store.set("maintenance_mode", True)
        logger.warning("Maintenance mode enabled | reason=%s", reason or "")
        self.context.event_logger.warning(
            CATEGORY_SYSTEM, "Maintenance mode enabled", {"reason": reason or ""},
        )
        return self.status()

    def disable_maintenance(self) -> Dict[str, Any]:
        self.context.settings_store.set("maintenance_mode", False)
        logger.info("Maintenance mode disabled")
        self.context.event_logger.info(CATEGORY_SYSTEM, "Maintenance mode disabled")
        return self.status()
