"""
管理 API

挂载在 {BASE_API_ROUTE}/manage 下，所有路由都要求管理权限（见 dependencies.py）。
业务组件为同步实现，路由使用普通 def，由 FastAPI 放入线程池执行。

分组:
  endpoints      端点定义 CRUD
  webhooks       Webhook 日志查询、重试、清理
  etl            ETL 模板 CRUD、测试执行、作业查询
  services       外部服务 CRUD、健康检查、测试调用
  tasks          定时任务 CRUD、暂停、恢复、立即执行
  actions        动作处理器列表、执行日志
  events         事件日志查询、统计、导出、清理
  config         运行期配置读写、重置、导入导出
  system         系统状态、健康、统计、维护模式
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from services.endpoint.dependencies import get_context, require_management_access
from services.endpoint.schemas import (
    CleanupRequest,
    EndpointCreate,
    EndpointUpdate,
    ETLTemplateCreate,
    ETLTemplateTest,
    ETLTemplateUpdate,
    EventExportRequest,
    ExternalServiceCreate,
    ExternalServiceTest,
    ExternalServiceUpdate,
    MaintenanceRequest,
    SettingsImport,
    SettingsReset,
    SettingsUpdate,
    TaskCreate,
    TaskUpdate,
)
from shared.context import AppContext
from shared.errors import NotFound
from shared.http_types import HandlerResponse

router = APIRouter(prefix="/manage", dependencies=[Depends(require_management_access)])


def _to_json_response(result: HandlerResponse) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.body), headers=result.headers)


# ==================== 端点 ====================

@router.get("/endpoints")
def list_endpoints(
    active_only: bool = Query(False),
    handler_type: Optional[str] = Query(None),
    context: AppContext = Depends(get_context),
):
    return {"items": context.registry.list_endpoints(active_only=active_only, handler_type=handler_type)}


@router.post("/endpoints", status_code=status.HTTP_201_CREATED)
def create_endpoint(body: EndpointCreate, context: AppContext = Depends(get_context)):
    return context.registry.create_endpoint(body.model_dump(exclude_none=True))


@router.get("/endpoints/{endpoint_id}")
def get_endpoint(endpoint_id: str, context: AppContext = Depends(get_context)):
    return context.registry.get_endpoint(endpoint_id)


@router.put("/endpoints/{endpoint_id}")
def update_endpoint(endpoint_id: str, body: EndpointUpdate, context: AppContext = Depends(get_context)):
    return context.registry.update_endpoint(endpoint_id, body.model_dump(exclude_unset=True))


@router.delete("/endpoints/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_endpoint(endpoint_id: str, context: AppContext = Depends(get_context)):
    context.registry.delete_endpoint(endpoint_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== Webhook 日志 ====================

@router.get("/webhooks/logs")
def list_webhook_logs(
    endpoint_id: Optional[str] = Query(None),
    log_status: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    context: AppContext = Depends(get_context),
):
    return context.webhooks.list_logs(endpoint_id=endpoint_id, status=log_status, page=page, per_page=per_page)


@router.get("/webhooks/logs/{log_id}")
def get_webhook_log(log_id: str, context: AppContext = Depends(get_context)):
    return context.webhooks.get_log(log_id)


@router.post("/webhooks/logs/{log_id}/retry")
def retry_webhook(log_id: str, context: AppContext = Depends(get_context)):
    max_retries = int(context.settings_store.get("webhook_max_retries"))
    return context.webhooks.retry(log_id, max_retries=max_retries)


@router.post("/webhooks/cleanup")
def cleanup_webhook_logs(body: CleanupRequest, context: AppContext = Depends(get_context)):
    return {"deleted": context.webhooks.cleanup(body.days_old)}


# ==================== ETL ====================

@router.get("/etl/templates")
def list_etl_templates(active_only: bool = Query(False), context: AppContext = Depends(get_context)):
    return {"items": context.etl.list_templates(active_only=active_only)}


@router.post("/etl/templates", status_code=status.HTTP_201_CREATED)
def create_etl_template(body: ETLTemplateCreate, context: AppContext = Depends(get_context)):
    return context.etl.create_template(body.model_dump(exclude_none=True))


@router.get("/etl/templates/{template_id}")
def get_etl_template(template_id: str, context: AppContext = Depends(get_context)):
    return context.etl.get_template(template_id)


@router.put("/etl/templates/{template_id}")
def update_etl_template(template_id: str, body: ETLTemplateUpdate, context: AppContext = Depends(get_context)):
    return context.etl.update_template(template_id, body.model_dump(exclude_unset=True))


@router.delete("/etl/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_etl_template(template_id: str, context: AppContext = Depends(get_context)):
    context.etl.delete_template(template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/etl/templates/{template_id}/test")
def test_etl_template(template_id: str, body: ETLTemplateTest, context: AppContext = Depends(get_context)):
    return _to_json_response(context.etl.test_template(template_id, body.test_data))


@router.get("/etl/jobs")
def list_etl_jobs(
    template_id: Optional[str] = Query(None),
    job_status: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    context: AppContext = Depends(get_context),
):
    return context.etl.list_jobs(template_id=template_id, status=job_status, page=page, per_page=per_page)


@router.get("/etl/jobs/{job_id}")
def get_etl_job(job_id: str, context: AppContext = Depends(get_context)):
    return context.etl.get_job(job_id)


# ==================== 外部服务 ====================

@router.get("/services")
def list_services(active_only: bool = Query(False), context: AppContext = Depends(get_context)):
    return {"items": context.connector.list_services(active_only=active_only)}


@router.post("/services", status_code=status.HTTP_201_CREATED)
def create_service(body: ExternalServiceCreate, context: AppContext = Depends(get_context)):
    return context.connector.create_service(body.model_dump(exclude_none=True))


@router.get("/services/{service_id}")
def get_service(service_id: str, context: AppContext = Depends(get_context)):
    return context.connector.get_service_record(service_id)


@router.put("/services/{service_id}")
def update_service(service_id: str, body: ExternalServiceUpdate, context: AppContext = Depends(get_context)):
    return context.connector.update_service(service_id, body.model_dump(exclude_unset=True))


@router.delete("/services/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_service(service_id: str, context: AppContext = Depends(get_context)):
    context.connector.delete_service(service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/services/{service_id}/health")
def check_service_health(service_id: str, context: AppContext = Depends(get_context)):
    context.connector.get_service_record(service_id)
    return context.connector.health_check(service_id)


@router.post("/services/{service_id}/test")
def test_service(service_id: str, body: ExternalServiceTest, context: AppContext = Depends(get_context)):
    return context.connector.test_service(service_id, path=body.path, method=body.method, data=body.data)


# ==================== 定时任务 ====================

@router.get("/tasks")
def list_tasks(context: AppContext = Depends(get_context)):
    return {"items": context.scheduler.list_tasks()}


@router.post("/tasks", status_code=status.HTTP_201_CREATED)
def create_task(body: TaskCreate, context: AppContext = Depends(get_context)):
    return context.scheduler.create_task(body.model_dump(exclude_none=True))


@router.get("/tasks/{task_id}")
def get_task(task_id: str, context: AppContext = Depends(get_context)):
    return context.scheduler.get_task(task_id)


@router.put("/tasks/{task_id}")
def update_task(task_id: str, body: TaskUpdate, context: AppContext = Depends(get_context)):
    return context.scheduler.update_task(task_id, body.model_dump(exclude_unset=True))


@router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: str, context: AppContext = Depends(get_context)):
    context.scheduler.delete_task(task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/tasks/{task_id}/pause")
def pause_task(task_id: str, context: AppContext = Depends(get_context)):
    return context.scheduler.pause_task(task_id)


@router.post("/tasks/{task_id}/resume")
def resume_task(task_id: str, context: AppContext = Depends(get_context)):
    return context.scheduler.resume_task(task_id)


@router.post("/tasks/{task_id}/run")
def run_task(task_id: str, context: AppContext = Depends(get_context)):
    return context.scheduler.run_now(task_id)


# ==================== 动作 ====================

@router.get("/actions")
def list_actions(group: Optional[str] = Query(None), context: AppContext = Depends(get_context)):
    actions = context.actions
    return {"items": actions.get_handlers(group), "groups": actions.get_groups()}


@router.get("/actions/log")
def get_action_log(limit: int = Query(100, ge=1, le=1000), context: AppContext = Depends(get_context)):
    return {"items": context.actions.get_execution_log(limit)}


@router.delete("/actions/log", status_code=status.HTTP_204_NO_CONTENT)
def clear_action_log(context: AppContext = Depends(get_context)):
    context.actions.clear_execution_log()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==================== 事件日志 ====================

@router.get("/events")
def list_events(
    category: Optional[str] = Query(None),
    level: Optional[str] = Query(None),
    min_level: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    context: AppContext = Depends(get_context),
):
    filters = {
        "category": category,
        "level": level,
        "min_level": min_level,
        "search": search,
        "page": page,
        "per_page": per_page,
    }
    return context.event_logger.get_events(filters)


@router.get("/events/statistics")
def event_statistics(period: str = Query("today"), context: AppContext = Depends(get_context)):
    return context.event_logger.get_statistics(period)


@router.post("/events/export")
def export_events(body: EventExportRequest, context: AppContext = Depends(get_context)):
    settings = context.settings
    return context.event_logger.export(
        settings.EXPORT_DIR,
        settings.EXPORT_BASE_URL,
        filters=body.filters,
        fmt=body.format,
    )


@router.post("/events/cleanup")
def cleanup_events(body: CleanupRequest, context: AppContext = Depends(get_context)):
    return {"deleted": context.event_logger.cleanup(body.days_old)}


# ==================== 配置 ====================

@router.get("/config")
def get_config(grouped: bool = Query(False), context: AppContext = Depends(get_context)):
    store = context.settings_store
    return store.get_grouped() if grouped else store.get_all()


@router.get("/config/export")
def export_config(context: AppContext = Depends(get_context)):
    return json.loads(context.settings_store.export())


@router.get("/config/{key}")
def get_config_value(key: str, context: AppContext = Depends(get_context)):
    store = context.settings_store
    if not store.has(key):
        raise NotFound(f"Setting not found: {key}")
    return {"key": key, "value": store.get(key), "default": store.get_default(key)}


@router.put("/config")
def update_config(body: SettingsUpdate, context: AppContext = Depends(get_context)):
    updated = context.settings_store.set_many(body.settings)
    if "log_level" in updated:
        context.event_logger.set_min_level(updated["log_level"])
    return {"updated": updated}


@router.post("/config/reset")
def reset_config(body: SettingsReset, context: AppContext = Depends(get_context)):
    context.settings_store.reset(body.keys)
    return context.settings_store.get_all()


@router.post("/config/import")
def import_config(body: SettingsImport, context: AppContext = Depends(get_context)):
    return {"imported": context.settings_store.import_settings(body.payload, merge=body.merge)}


# ==================== 系统 ====================

@router.get("/system/status")
def system_status(context: AppContext = Depends(get_context)):
    return context.system.status()


@router.get("/system/health")
def system_health(context: AppContext = Depends(get_context)):
    return context.system.health()


@router.get("/system/statistics")
def system_statistics(context: AppContext = Depends(get_context)):
    return context.system.statistics()


@router.post("/system/maintenance/enable")
def enable_maintenance(body: MaintenanceRequest, context: AppContext = Depends(get_context)):
    return context.system.enable_maintenance(body.reason)


@router.post("/system/maintenance/disable")
def disable_maintenance(context: AppContext = Depends(get_context)):
    return context.system.disable_maintenance()
