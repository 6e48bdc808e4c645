"""
定时任务数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean
from sqlalchemy.dialects.postgresql import UUID
import uuid
from shared.database import Base
from shared.models.system import JSONBCompat


class ScheduledTask(Base):
    """定时任务表"""
    __tablename__ = "scheduled_tasks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    task_type = Column(String(20), nullable=False)  # etl/cleanup/health_check/webhook_retry/custom
    handler = Column(String(100), nullable=False, index=True)
    frequency = Column(String(30), nullable=False, default='hourly')
    config = Column(JSONBCompat, nullable=True)
    priority = Column(Integer, default=10, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_system = Column(Boolean, default=False, nullable=False)
    status = Column(String(20), default='pending', nullable=False, index=True)  # pending/running/completed/failed/paused
    next_run_at = Column(DateTime, nullable=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)  # 原子领取时间，用于识别卡死的 running 状态
    last_result = Column(JSONBCompat, nullable=True)
    last_duration_ms = Column(Integer, nullable=True)
    run_count = Column(Integer, default=0, nullable=False)
    fail_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "task_type": self.task_type,
            "handler": self.handler,
            "frequency": self.frequency,
            "config": self.config or {},
            "priority": self.priority,
            "is_active": self.is_active,
            "is_system": self.is_system,
            "status": self.status,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result,
            "last_duration_ms": self.last_duration_ms,
            "run_count": self.run_count,
            "fail_count": self.fail_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
