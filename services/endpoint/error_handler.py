"""
统一错误处理与 request_id

统一错误响应格式:
  {
      "error_code": "not_found",
      "message": "Endpoint not found: ...",
      "request_id": "550e8400-e29b-41d4-a716-446655440000"
  }

PlatformError 按自身 status_code / error_code 转换；HTTPException 的 detail
可以是字符串或 {"error_code", "message"}；未捕获异常一律 500 internal_error，
不返回异常信息。
"""
import logging
import uuid
from typing import Optional, Tuple

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from shared.errors import PlatformError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

STATUS_CODE_ERROR_MAP = {
    400: "validation_error",
    401: "unauthorized",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
    429: "rate_limit_exceeded",
    500: "internal_error",
    502: "upstream_error",
    503: "service_unavailable",
}


def generate_request_id() -> str:
    return str(uuid.uuid4())


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_request_id()


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """
    创建统一格式的错误 JSON 响应。

    Args:
        status_code: HTTP 状态码
        error_code: 机器可读的错误码
        message: 错误描述
        request_id: 请求追踪 ID，为 None 时自动生成

    Returns:
        带 X-Request-Id 响应头的 JSONResponse
    """
    if request_id is None:
        request_id = generate_request_id()

    return JSONResponse(
        status_code=status_code,
        content={"error_code": error_code, "message": message, "request_id": request_id},
        headers={REQUEST_ID_HEADER: request_id},
    )


def _extract_error_code_and_message(status_code: int, detail) -> Tuple[str, str]:
    default_code = STATUS_CODE_ERROR_MAP.get(status_code, "internal_error")
    if isinstance(detail, dict):
        return detail.get("error_code", default_code), detail.get("message", str(detail))
    if isinstance(detail, str):
        return default_code, detail
    return default_code, str(detail) if detail else "Unknown error"


# ---------------------------------------------------------------------------
# FastAPI 异常处理器
# ---------------------------------------------------------------------------

async def platform_exception_handler(request: Request, exc: PlatformError) -> JSONResponse:
    return create_error_response(
        status_code=exc.status_code,
        error_code=exc.error_code,
        message=exc.message,
        request_id=_request_id(request),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code, message = _extract_error_code_and_message(exc.status_code, exc.detail)
    response = create_error_response(exc.status_code, error_code, message, _request_id(request))
    for key, value in (getattr(exc, "headers", None) or {}).items():
        response.headers[key] = value
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体校验失败 → 422，只返回首个错误的位置"""
    errors = exc.errors()
    message = "Request validation failed"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"{message}: {location} {errors[0].get('msg', '')}".strip()
    return create_error_response(422, "validation_error", message, _request_id(request))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception | path=%s", request.url.path)
    return create_error_response(500, "internal_error", "Internal server error", _request_id(request))


# ---------------------------------------------------------------------------
# Request ID 中间件
# ---------------------------------------------------------------------------

class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    为每个请求生成 request_id，存入 request.state 并写入 X-Request-Id 响应头。
    调用方传入 X-Request-Id 时沿用该值。
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        request.state.request_id = request_id

        response = await call_next(request)

        if REQUEST_ID_HEADER not in response.headers:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response
