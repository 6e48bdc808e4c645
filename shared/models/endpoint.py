"""
自定义端点数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Boolean, Integer, Index
from sqlalchemy.dialects.postgresql import UUID
import uuid
from shared.database import Base
from shared.models.system import JSONBCompat


class CustomEndpoint(Base):
    """自定义端点定义表"""
    __tablename__ = "custom_endpoints"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, index=True)
    route = Column(String(255), nullable=False, default="")  # 如 /{order_id}/items
    method = Column(String(10), nullable=False, default="POST")
    handler_type = Column(String(20), nullable=False)  # webhook/action/script/forward/etl
    handler_config = Column(JSONBCompat, nullable=True)
    permission_type = Column(String(20), nullable=False, default="public")
    permission_config = Column(JSONBCompat, nullable=True)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    rate_limit = Column(Integer, nullable=True)  # 每分钟请求数，空表示不限
    cache_ttl = Column(Integer, default=0, nullable=False)
    timeout = Column(Integer, default=30, nullable=False)
    retry_policy = Column(JSONBCompat, nullable=True)
    request_schema = Column(JSONBCompat, nullable=True)
    response_schema = Column(JSONBCompat, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_custom_endpoints_slug_route_method", "slug", "route", "method"),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "slug": self.slug,
            "route": self.route,
            "method": self.method,
            "handler_type": self.handler_type,
            "handler_config": self.handler_config or {},
            "permission_type": self.permission_type,
            "permission_config": self.permission_config or {},
            "description": self.description,
            "is_active": self.is_active,
            "rate_limit": self.rate_limit,
            "cache_ttl": self.cache_ttl,
            "timeout": self.timeout,
            "retry_policy": self.retry_policy,
            "request_schema": self.request_schema,
            "response_schema": self.response_schema,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
