"""
ETL 模板与作业数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from shared.database import Base
from shared.models.system import JSONBCompat


class ETLTemplate(Base):
    """ETL 模板表"""
    __tablename__ = "etl_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    extract_config = Column(JSONBCompat, nullable=True)  # paths/root/filters
    transform_config = Column(JSONBCompat, nullable=True)  # transformations/static_fields/computed_fields
    field_mappings = Column(JSONBCompat, nullable=True)
    load_config = Column(JSONBCompat, nullable=True)  # destination + 目标参数
    external_service_id = Column(UUID(as_uuid=True), ForeignKey("external_services.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "extract_config": self.extract_config or {},
            "transform_config": self.transform_config or {},
            "field_mappings": self.field_mappings or {},
            "load_config": self.load_config or {},
            "external_service_id": str(self.external_service_id) if self.external_service_id else None,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ETLJob(Base):
    """ETL 作业表（单次执行）"""
    __tablename__ = "etl_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    template_id = Column(UUID(as_uuid=True), ForeignKey("etl_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    webhook_log_id = Column(UUID(as_uuid=True), ForeignKey("webhook_logs.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), default='pending', nullable=False, index=True)  # pending/extracting/transforming/loading/completed/failed
    input_data = Column(JSONBCompat, nullable=True)
    extracted_data = Column(JSONBCompat, nullable=True)
    transformed_data = Column(JSONBCompat, nullable=True)
    load_result = Column(JSONBCompat, nullable=True)
    external_response_code = Column(Integer, nullable=True)
    external_response_body = Column(JSONBCompat, nullable=True)
    error_stage = Column(String(20), nullable=True)  # extract/transform/load
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "template_id": str(self.template_id),
            "webhook_log_id": str(self.webhook_log_id) if self.webhook_log_id else None,
            "status": self.status,
            "input_data": self.input_data,
            "extracted_data": self.extracted_data,
            "transformed_data": self.transformed_data,
            "load_result": self.load_result,
            "external_response_code": self.external_response_code,
            "external_response_body": self.external_response_body,
            "error_stage": self.error_stage,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
