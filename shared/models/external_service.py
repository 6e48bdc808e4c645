"""
外部服务数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean
from sqlalchemy.dialects.postgresql import UUID
import uuid
from shared.database import Base
from shared.models.system import JSONBCompat


class ExternalService(Base):
    """外部服务配置表"""
    __tablename__ = "external_services"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    base_url = Column(String(2048), nullable=False)
    auth_type = Column(String(20), default='none', nullable=False)  # none/api_key/bearer/basic/oauth2/custom
    auth_config = Column(JSONBCompat, nullable=True)
    default_headers = Column(JSONBCompat, nullable=True)
    retry_config = Column(JSONBCompat, nullable=True)  # max_retries/retry_delay/retry_codes
    rate_limit_config = Column(JSONBCompat, nullable=True)  # max_requests/time_window
    health_check_config = Column(JSONBCompat, nullable=True)  # endpoint/expected_code/timeout
    timeout = Column(Integer, default=30, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    health_status = Column(String(20), default='unknown', nullable=False)  # healthy/degraded/unhealthy/unknown
    last_health_check = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self, include_secrets: bool = True) -> dict:
        data = {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "base_url": self.base_url,
            "auth_type": self.auth_type,
            "auth_config": self.auth_config or {},
            "default_headers": self.default_headers or {},
            "retry_config": self.retry_config or {},
            "rate_limit_config": self.rate_limit_config or {},
            "health_check_config": self.health_check_config or {},
            "timeout": self.timeout,
            "is_active": self.is_active,
            "health_status": self.health_status,
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if not include_secrets:
            data["auth_config"] = {k: "***" for k in (self.auth_config or {})}
        return data
