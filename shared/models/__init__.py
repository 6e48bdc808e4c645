"""
数据库模型
"""
from shared.models.system import EventLog, SystemSetting
from shared.models.endpoint import CustomEndpoint
from shared.models.external_service import ExternalService
from shared.models.webhook import WebhookLog
from shared.models.etl import ETLTemplate, ETLJob
from shared.models.scheduler import ScheduledTask

__all__ = [
    "EventLog",
    "SystemSetting",
    "CustomEndpoint",
    "ExternalService",
    "WebhookLog",
    "ETLTemplate",
    "ETLJob",
    "ScheduledTask",
]
