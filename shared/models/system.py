"""
系统配置和事件日志相关数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer
from sqlalchemy.dialects.postgresql import UUID, JSONB, INET
from sqlalchemy.types import TypeDecorator, JSON
import uuid
from shared.database import Base


# 创建一个兼容SQLite的JSONB类型
class JSONBCompat(TypeDecorator):
    """兼容SQLite的JSONB类型"""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


# 创建一个兼容SQLite的INET类型
class INETCompat(TypeDecorator):
    """兼容SQLite的INET类型"""
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(INET())
        else:
            return dialect.type_descriptor(String(45))  # IPv6最长45字符


class EventLog(Base):
    """事件日志表"""
    __tablename__ = "event_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    level = Column(String(20), nullable=False, index=True)  # debug/info/warning/error/critical
    level_value = Column(Integer, nullable=False, default=1, index=True)  # 级别数值，便于 min_level 过滤
    category = Column(String(50), nullable=False, index=True)  # system/endpoint/webhook/etl/...
    message = Column(Text, nullable=False)
    context = Column(JSONBCompat, nullable=True)
    user_id = Column(String(64), nullable=True, index=True)
    ip_address = Column(INETCompat, nullable=True)
    user_agent = Column(Text, nullable=True)
    request_uri = Column(String(2048), nullable=True)
    request_method = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)


class SystemSetting(Base):
    """运行期配置表（键值存储）"""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSONBCompat, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
