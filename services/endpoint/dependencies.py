"""
管理 API 依赖注入

管理接口认证（任一满足即可）:
  - 请求头 X-API-Key 在 MANAGEMENT_API_KEYS 中
  - Authorization: Bearer <JWT>，且载荷 role == "admin"
"""
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from shared.context import AppContext
from shared.utils.jwt import decode_token
from shared.utils.security import constant_time_in

MANAGEMENT_API_KEY_HEADER = "X-API-Key"
ADMIN_ROLE = "admin"


def get_context(request: Request) -> AppContext:
    """从 app.state 取应用上下文"""
    return request.app.state.context


def _extract_bearer_payload(request: Request, context: AppContext) -> Optional[dict]:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1]
    return decode_token(token, secret_key=context.settings.JWT_SECRET_KEY)


def require_management_access(
    request: Request,
    context: AppContext = Depends(get_context),
) -> str:
    """
    要求管理权限的依赖项

    Returns:
        调用方标识（"api_key" 或 JWT 的 sub）
    """
    api_key = request.headers.get(MANAGEMENT_API_KEY_HEADER)
    if api_key and constant_time_in(api_key, context.settings.MANAGEMENT_API_KEYS):
        return "api_key"

    has_bearer = request.headers.get("authorization", "").startswith("Bearer ")
    if not api_key and not has_bearer:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    payload = _extract_bearer_payload(request, context)
    if payload is None or payload.get("role") != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
    return str(payload.get("sub") or ADMIN_ROLE)
