"""
管理 API 请求模型

创建模型声明必填字段；更新模型全部可选，路由层用 model_dump(exclude_unset=True)
只把显式提交的字段交给业务组件。枚举取值与唯一性由业务组件校验。
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _not_blank(v: Optional[str], field_name: str) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError(f"{field_name} must not be empty")
    return v


# ==================== 端点 ====================

class EndpointBase(BaseModel):
    description: Optional[str] = None
    handler_config: Optional[Dict[str, Any]] = None
    permission_type: Optional[str] = None
    permission_config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    rate_limit: Optional[int] = Field(None, ge=1, description="每分钟请求上限")
    cache_ttl: Optional[int] = Field(None, ge=0)
    timeout: Optional[int] = Field(None, ge=1)
    retry_policy: Optional[Dict[str, Any]] = None
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None


class EndpointCreate(EndpointBase):
    name: str = Field(..., description="端点名称")
    slug: str = Field(..., description="URL slug")
    route: str = Field(..., description="slug 之后的路由模式，可为空字符串")
    method: str = Field("POST", description="HTTP 方法")
    handler_type: str = Field(..., description="webhook/action/script/forward/etl")

    @field_validator("name", "slug")
    @classmethod
    def not_empty(cls, v: str, info) -> str:
        return _not_blank(v, info.field_name)


class EndpointUpdate(EndpointBase):
    name: Optional[str] = None
    slug: Optional[str] = None
    route: Optional[str] = None
    method: Optional[str] = None
    handler_type: Optional[str] = None


# ==================== ETL ====================

class ETLTemplateBase(BaseModel):
    description: Optional[str] = None
    extract_config: Optional[Dict[str, Any]] = None
    transform_config: Optional[Dict[str, Any]] = None
    field_mappings: Optional[Dict[str, Any]] = None
    load_config: Optional[Dict[str, Any]] = None
    external_service_id: Optional[str] = None
    is_active: Optional[bool] = None


class ETLTemplateCreate(ETLTemplateBase):
    name: str = Field(..., description="模板名称")

    @field_validator("name")
    @classmethod
    def not_empty(cls, v: str, info) -> str:
        return _not_blank(v, info.field_name)


class ETLTemplateUpdate(ETLTemplateBase):
    name: Optional[str] = None


class ETLTemplateTest(BaseModel):
    test_data: Any = Field(..., description="作为输入数据执行一次完整管道")


# ==================== 外部服务 ====================

class ExternalServiceBase(BaseModel):
    description: Optional[str] = None
    auth_type: Optional[str] = None
    auth_config: Optional[Dict[str, Any]] = None
    default_headers: Optional[Dict[str, str]] = None
    retry_config: Optional[Dict[str, Any]] = None
    rate_limit_config: Optional[Dict[str, Any]] = None
    health_check_config: Optional[Dict[str, Any]] = None
    timeout: Optional[int] = Field(None, ge=1, le=300)
    is_active: Optional[bool] = None


class ExternalServiceCreate(ExternalServiceBase):
    name: str = Field(..., description="服务名称")
    base_url: str = Field(..., description="http(s) 基础地址")


class ExternalServiceUpdate(ExternalServiceBase):
    name: Optional[str] = None
    base_url: Optional[str] = None


class ExternalServiceTest(BaseModel):
    path: str = ""
    method: str = "GET"
    data: Optional[Dict[str, Any]] = None


# ==================== 定时任务 ====================

class TaskBase(BaseModel):
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None
    next_run_at: Optional[datetime] = None


class TaskCreate(TaskBase):
    name: str = Field(..., description="任务名称")
    task_type: str = Field(..., description="etl/cleanup/health_check/webhook_retry/custom")
    handler: str = Field(..., description="处理器名称")
    frequency: str = Field(..., description="once/every_minute/hourly/daily/weekly/monthly")


class TaskUpdate(TaskBase):
    name: Optional[str] = None
    task_type: Optional[str] = None
    handler: Optional[str] = None
    frequency: Optional[str] = None


# ==================== 其他 ====================

class CleanupRequest(BaseModel):
    days_old: int = Field(30, ge=1, le=3650)


class MaintenanceRequest(BaseModel):
    reason: Optional[str] = None


class SettingsUpdate(BaseModel):
    settings: Dict[str, Any] = Field(..., description="键值对，任一值无效则全部不写入")


class SettingsReset(BaseModel):
    keys: Optional[List[str]] = None


class SettingsImport(BaseModel):
    payload: str = Field(..., description="JSON 对象字符串")
    merge: bool = True


class EventExportRequest(BaseModel):
    format: str = Field("json", pattern="^(json|csv)$")
    filters: Optional[Dict[str, Any]] = None
