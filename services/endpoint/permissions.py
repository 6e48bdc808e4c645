"""
端点权限解析

permission_type 与 permission_config:
  public        始终放行
  signature     secret / header（默认 X-Webhook-Signature）/ algorithm（默认 sha256）/ format（hex|base64）
  api_key       keys / header（默认 X-API-Key）/ query_param（默认 api_key）
  token         header（默认 Authorization），去掉 Bearer 前缀后交给令牌校验器
  ip_whitelist  whitelist（精确 / CIDR / 通配符），空列表放行所有
  custom        custom_permission_check 过滤器决定，默认拒绝

未提供凭证 → 401；凭证被拒绝 → 403。拒绝原因只写日志，不返回给调用方。
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from shared.errors import PermissionDenied
from shared.http_types import InboundRequest
from shared.utils.jwt import decode_token
from shared.utils.security import constant_time_in, ip_matches, verify_signature

logger = logging.getLogger(__name__)

DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"
DEFAULT_API_KEY_HEADER = "X-API-Key"
DEFAULT_API_KEY_QUERY = "api_key"
DEFAULT_TOKEN_HEADER = "Authorization"


class PermissionType(str, Enum):
    PUBLIC = "public"
    SIGNATURE = "signature"
    API_KEY = "api_key"
    TOKEN = "token"
    IP_WHITELIST = "ip_whitelist"
    CUSTOM = "custom"


class TokenValidator:
    """
    默认令牌校验器：HS256 JWT

    permission_config:
        secret           校验密钥，默认 JWT_SECRET_KEY
        audience         可选 aud
        required_claims  {claim: 期望值}，全部相等才通过
    """

    def __call__(self, token: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        payload = decode_token(token, secret_key=config.get("secret"), audience=config.get("audience"))
        if payload is None:
            return None
        for claim, expected in (config.get("required_claims") or {}).items():
            if payload.get(claim) != expected:
                return None
        return payload


def _unauthorized() -> PermissionDenied:
    return PermissionDenied("Authentication required", status_code=401)


def _forbidden() -> PermissionDenied:
    return PermissionDenied("Access denied", status_code=403)


class PermissionResolver:
    """
    权限解析器

    Args:
        bus: 事件总线（custom 类型使用 custom_permission_check 过滤器）
        token_validator: (token, permission_config) -> 载荷或 None
    """

    def __init__(self, bus, token_validator: Optional[Callable[[str, Dict[str, Any]], Any]] = None):
        self.bus = bus
        self.token_validator = token_validator or TokenValidator()
        self._checks: Dict[PermissionType, Callable[[InboundRequest, Dict[str, Any], Dict[str, Any]], None]] = {
            PermissionType.PUBLIC: self._check_public,
            PermissionType.SIGNATURE: self._check_signature,
            PermissionType.API_KEY: self._check_api_key,
            PermissionType.TOKEN: self._check_token,
            PermissionType.IP_WHITELIST: self._check_ip_whitelist,
            PermissionType.CUSTOM: self._check_custom,
        }

    def check(self, request: InboundRequest, definition: Dict[str, Any]) -> None:
        """
        校验请求是否可以访问端点。

        Raises:
            PermissionDenied: 401 未提供凭证 / 403 凭证被拒绝
        """
        name = definition.get("permission_type") or PermissionType.PUBLIC.value
        try:
            permission_type = PermissionType(name)
        except ValueError:
            logger.warning("Unknown permission type denied | endpoint_id=%s | type=%s", definition.get("id"), name)
            raise _forbidden() from None

        config = definition.get("permission_config") or {}
        try:
            self._checks[permission_type](request, definition, config)
        except PermissionDenied as e:
            logger.info(
                "Permission denied | endpoint_id=%s | type=%s | status=%s | ip=%s",
                definition.get("id"), permission_type.value, e.status_code, request.client_ip,
            )
            raise

    def allows(self, request: InboundRequest, definition: Dict[str, Any]) -> bool:
        try:
            self.check(request, definition)
        except PermissionDenied:
            return False
        return True

    # ------------------------------------------------------------------
    # 各类型校验
    # ------------------------------------------------------------------

    def _check_public(self, request, definition, config) -> None:
        return None

    def _check_signature(self, request, definition, config) -> None:
        signature = request.header(config.get("header") or DEFAULT_SIGNATURE_HEADER)
        if not signature:
            raise _unauthorized()
        secret = config.get("secret")
        if not secret:
            raise _forbidden()
        if not verify_signature(
            request.body, secret, signature,
            config.get("algorithm") or "sha256",
            config.get("format") or "hex",
        ):
            raise _forbidden()

    def _check_api_key(self, request, definition, config) -> None:
        key = request.header(config.get("header") or DEFAULT_API_KEY_HEADER)
        if not key:
            key = request.query_params.get(config.get("query_param") or DEFAULT_API_KEY_QUERY)
        if not key:
            raise _unauthorized()
        if not constant_time_in(key, config.get("keys") or []):
            raise _forbidden()

    def _check_token(self, request, definition, config) -> None:
        token = request.header(config.get("header") or DEFAULT_TOKEN_HEADER) or ""
        if token[:7].lower() == "bearer ":
            token = token[7:]
        token = token.strip()
        if not token:
            raise _unauthorized()
        if not self.token_validator(token, config):
            raise _forbidden()

    def _check_ip_whitelist(self, request, definition, config) -> None:
        whitelist = config.get("whitelist") or []
        if not whitelist:
            return
        ip = request.client_ip
        if not ip or not any(ip_matches(ip, str(pattern)) for pattern in whitelist):
            raise _forbidden()

    def _check_custom(self, request, definition, config) -> None:
        if not self.bus.apply_filters("custom_permission_check", False, request, definition):
            raise _forbidden()
