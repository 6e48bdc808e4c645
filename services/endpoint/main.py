"""
动态端点平台主服务

FastAPI 应用（端口 8000）:
  - {BASE_API_ROUTE}/custom/{path}   所有自定义端点的统一入口，按 (method, path) 分发
  - {BASE_API_ROUTE}/manage/...      管理 API
  - /health                          数据库与 Redis 健康检查

中间件:
  - CORSMiddleware
  - RequestIdMiddleware: 为每个请求生成 request_id 并通过 X-Request-Id 返回
"""
import sys
import os
import logging

# 添加项目根目录到 Python 路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from services.endpoint.error_handler import (
    RequestIdMiddleware,
    REQUEST_ID_HEADER,
    generic_exception_handler,
    http_exception_handler,
    platform_exception_handler,
    validation_exception_handler,
)
from services.endpoint.management import router as management_router
from shared.context import AppContext, build_context
from shared.errors import PlatformError
from shared.http_types import HandlerResponse, InboundRequest

logger = logging.getLogger("endpoint_platform")

CUSTOM_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def _read_form(request: Request) -> dict:
    """multipart 表单：普通字段取字符串，文件字段只保留元信息"""
    form = await request.form()
    data = {}
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            value = {"filename": value.filename, "content_type": value.content_type}
        data[key] = value
    return data


async def build_inbound_request(request: Request, path: str) -> InboundRequest:
    """把 starlette Request 读取为与框架无关的 InboundRequest"""
    content_type = request.headers.get("content-type", "")
    # 先读取原始字节，签名校验与请求日志需要；starlette 会缓存请求体供 form() 复用
    body = await request.body()
    form = {}
    if content_type.startswith("multipart/form-data"):
        form = await _read_form(request)

    return InboundRequest(
        method=request.method,
        path=f"custom/{path}",
        headers=dict(request.headers),
        query_params=dict(request.query_params),
        body=body,
        client_host=request.client.host if request.client else None,
        form=form,
    )


def _to_response(result: HandlerResponse, request: Request) -> JSONResponse:
    headers = dict(result.headers)
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        headers.setdefault(REQUEST_ID_HEADER, request_id)
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.body), headers=headers)


def create_app(context: AppContext = None) -> FastAPI:
    """
    创建 FastAPI 应用。

    Args:
        context: 应用上下文，缺省时按环境配置构造

    Returns:
        FastAPI 实例，context 挂在 app.state.context
    """
    if context is None:
        context = build_context()
    settings = context.settings
    base_route = "/" + settings.BASE_API_ROUTE.strip("/")

    app = FastAPI(
        title=settings.APP_NAME,
        description="动态端点、Webhook、ETL 与外部服务对接平台",
        version=settings.APP_VERSION,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(PlatformError, platform_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(management_router, prefix=base_route)

    @app.api_route(f"{base_route}/custom/{{path:path}}", methods=CUSTOM_METHODS)
    async def custom_endpoint(path: str, request: Request):
        """自定义端点统一入口"""
        inbound = await build_inbound_request(request, path)
        result = await run_in_threadpool(context.dispatcher.handle, inbound)
        return _to_response(result, request)

    @app.get("/health")
    async def health_check():
        return await run_in_threadpool(context.system.health)

    @app.get("/")
    async def root():
        return {"service": settings.APP_NAME, "status": "running"}

    @app.on_event("shutdown")
    async def shutdown_flush_events():
        flushed = context.event_logger.flush()
        logger.info("Event log flushed on shutdown | count=%s", flushed)

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
