"""
Webhook 接收日志数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from shared.database import Base
from shared.models.system import JSONBCompat, INETCompat


class WebhookLog(Base):
    """Webhook 接收日志表（先落库后校验）"""
    __tablename__ = "webhook_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    endpoint_id = Column(UUID(as_uuid=True), ForeignKey("custom_endpoints.id", ondelete="CASCADE"), nullable=False, index=True)
    source_ip = Column(INETCompat, nullable=True)
    source_identifier = Column(String(255), nullable=True)  # 投递 ID 或 User-Agent
    request_method = Column(String(10), nullable=False)
    request_headers = Column(JSONBCompat, nullable=True)  # 已脱敏
    request_payload = Column(Text, nullable=True)  # 原始请求体
    query_params = Column(JSONBCompat, nullable=True)
    status = Column(String(20), default='pending', nullable=False, index=True)  # pending/received/processed/queued/failed
    signature_valid = Column(Boolean, nullable=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(JSONBCompat, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "endpoint_id": str(self.endpoint_id),
            "source_ip": self.source_ip,
            "source_identifier": self.source_identifier,
            "request_method": self.request_method,
            "request_headers": self.request_headers,
            "request_payload": self.request_payload,
            "query_params": self.query_params,
            "status": self.status,
            "signature_valid": self.signature_valid,
            "response_code": self.response_code,
            "response_body": self.response_body,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
