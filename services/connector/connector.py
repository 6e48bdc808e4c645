"""
外部服务连接器

封装对运维配置的外部 HTTP 服务的调用：认证、限流、重试、健康检查。

行为:
  - 服务配置按进程缓存，服务增删改与健康检查后失效
  - 限流：滑动窗口，超限在任何网络请求之前返回 429，不消耗重试次数
  - 重试：最多 max_retries 次额外尝试，第 n 次重试前等待 retry_delay * 2^(n-1) 毫秒，
    仅在连接失败（code=0）或响应码属于 retry_codes 时重试，返回最后一次结果
  - 每次 send 完成后触发 external.request 事件
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from services.connector.auth import AuthHeaderResolver, AuthType
from services.connector.rate_limiter import SlidingWindowRateLimiter
from shared.database import session_scope
from shared.errors import NotFound, RateLimited, TransportFailure, ValidationError
from shared.http_types import HandlerResponse, InboundRequest
from shared.models.external_service import ExternalService
from shared.utils.validators import parse_uuid, require_fields, require_uuid, validate_url

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_RETRY_CODES = [408, 429, 500, 502, 503, 504]
DEFAULT_TIMEOUT = 30

HEALTH_HEALTHY = "healthy"
HEALTH_DEGRADED = "degraded"
HEALTH_UNHEALTHY = "unhealthy"
HEALTH_UNKNOWN = "unknown"

JSON_CONTENT_TYPE = "application/json"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MULTIPART_CONTENT_TYPE = "multipart/form-data"

SERVICE_FIELDS = [
    "name", "description", "base_url", "auth_type", "auth_config", "default_headers",
    "retry_config", "rate_limit_config", "health_check_config", "timeout", "is_active",
]


@dataclass
class ConnectorResult:
    """外部调用结果，code=0 表示未收到 HTTP 响应"""

    success: bool
    code: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    attempts: int = 0
    response_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "code": self.code,
            "body": self.body,
            "headers": dict(self.headers),
            "error": self.error,
            "attempts": self.attempts,
            "response_time_ms": self.response_time_ms,
        }


def _decode_body(response: httpx.Response) -> Any:
    """优先按 JSON 解析响应体，失败则返回文本"""
    if not response.content:
        return ""
    try:
        return response.json()
    except ValueError:
        return response.text


class ExternalServiceConnector:
    """
    外部服务连接器

    Args:
        context: AppContext，提供 session_factory / redis / http_client / bus / settings
        sleep: 退避等待函数（秒），测试中可替换
    """

    def __init__(self, context, sleep: Callable[[float], None] = time.sleep):
        self.context = context
        self.http_client: httpx.Client = context.http_client
        self.rate_limiter = SlidingWindowRateLimiter(context.redis)
        self.auth = AuthHeaderResolver(context.redis, context.http_client)
        self.sleep = sleep
        self._service_cache: Dict[str, dict] = {}

    # ------------------------------------------------------------------
    # 服务配置
    # ------------------------------------------------------------------

    def get_service(self, service_id) -> Optional[dict]:
        """读取服务配置（带缓存），不存在返回 None"""
        key = str(service_id)
        if key in self._service_cache:
            return self._service_cache[key]
        parsed = parse_uuid(service_id)
        if parsed is None:
            return None
        with session_scope(self.context.session_factory) as db:
            service = db.query(ExternalService).filter(ExternalService.id == parsed).first()
            if service is None:
                return None
            data = service.to_dict()
        self._service_cache[key] = data
        return data

    def invalidate_cache(self, service_id=None) -> None:
        if service_id is None:
            self._service_cache.clear()
        else:
            self._service_cache.pop(str(service_id), None)

    # ------------------------------------------------------------------
    # 发送
    # ------------------------------------------------------------------

    def send(
        self,
        service_id,
        path: str = "",
        data: Optional[Dict[str, Any]] = None,
        method: str = "POST",
        options: Optional[Dict[str, Any]] = None,
    ) -> ConnectorResult:
        """
        向外部服务发送请求。

        Args:
            service_id: 外部服务 ID
            path: 相对 base_url 的路径
            data: 请求数据（GET 时作为查询参数）
            method: HTTP 方法
            options: headers / timeout / content_type

        Returns:
            ConnectorResult；服务不存在 code=404，已停用 code=503，限流 code=429
        """
        service = self.get_service(service_id)
        if service is None:
            return ConnectorResult(success=False, code=404, body="External service not found",
                                   error="Service not found")
        if not service.get("is_active", True):
            return ConnectorResult(success=False, code=503, body="External service is disabled",
                                   error="Service disabled")
        return self._execute(service, path, data or {}, method, options or {})

    def request_url(
        self,
        url: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ConnectorResult:
        """
        直接请求任意 URL，不经过服务配置：无认证、无限流、不重试。

        Returns:
            ConnectorResult；连接失败 code=0
        """
        method = (method or "GET").upper()
        merged = {"Accept": JSON_CONTENT_TYPE, "Content-Type": JSON_CONTENT_TYPE}
        merged.update({str(k): str(v) for k, v in (headers or {}).items()})
        kwargs = self._request_kwargs(method, data or {}, merged)
        timeout = float(timeout or self.context.settings.HTTP_DEFAULT_TIMEOUT)

        result = self._make_request(method, url, merged, kwargs, timeout)
        result.attempts = 1
        self.context.bus.emit("external.request", None, url, method, result)
        return result

    def _enforce_rate_limit(self, service: dict) -> None:
        """
        Raises:
            RateLimited: 滑动窗口内请求数已达 max_requests
        """
        config = service.get("rate_limit_config") or {}
        if not config.get("max_requests") or config.get("enabled") is False:
            return
        result = self.rate_limiter.check(
            service["id"],
            int(config["max_requests"]),
            int(config.get("time_window") or 60),
        )
        if not result.allowed:
            raise RateLimited(retry_after=result.retry_after)

    def build_url(self, base_url: str, path: str) -> str:
        base_url = base_url.rstrip("/")
        path = (path or "").lstrip("/")
        return f"{base_url}/{path}" if path else base_url

    def build_headers(self, service: dict, options: Dict[str, Any]) -> Dict[str, str]:
        """请求头：默认值 → 服务默认头 → 认证头 → 调用方覆盖"""
        headers = {
            "Accept": JSON_CONTENT_TYPE,
            "Content-Type": options.get("content_type") or JSON_CONTENT_TYPE,
        }
        headers.update({str(k): str(v) for k, v in (service.get("default_headers") or {}).items()})
        headers.update(self.auth.resolve(service))
        headers.update({str(k): str(v) for k, v in (options.get("headers") or {}).items()})
        return headers

    def _request_kwargs(self, method: str, data: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        if method in ("GET", "HEAD"):
            return {"params": data} if data else {}
        content_type = headers.get("Content-Type", JSON_CONTENT_TYPE)
        if FORM_CONTENT_TYPE in content_type:
            return {"content": urlencode(data, doseq=True)}
        if MULTIPART_CONTENT_TYPE in content_type:
            # 由 httpx 生成带 boundary 的 Content-Type
            headers.pop("Content-Type", None)
            return {"files": {k: (None, v if isinstance(v, (str, bytes)) else json.dumps(v)) for k, v in data.items()}}
        return {"content": json.dumps(data, default=str)}

    def _execute(
        self,
        service: dict,
        path: str,
        data: Dict[str, Any],
        method: str,
        options: Dict[str, Any],
    ) -> ConnectorResult:
        try:
            self._enforce_rate_limit(service)
        except RateLimited as e:
            logger.warning("External service rate limited | service_id=%s | retry_after=%s",
                           service["id"], e.retry_after)
            return ConnectorResult(
                success=False,
                code=e.status_code,
                body=e.message,
                headers={"Retry-After": str(e.retry_after)},
                error="Too many requests",
            )

        method = (method or "POST").upper()
        url = self.build_url(service["base_url"], path)
        headers = self.build_headers(service, options)
        kwargs = self._request_kwargs(method, data, headers)
        timeout = float(options.get("timeout") or service.get("timeout") or self.context.settings.HTTP_DEFAULT_TIMEOUT)

        retry_config = service.get("retry_config") or {}
        max_retries = int(retry_config.get("max_retries", DEFAULT_MAX_RETRIES))
        retry_delay = int(retry_config.get("retry_delay", DEFAULT_RETRY_DELAY_MS))
        retry_codes = retry_config.get("retry_codes") or DEFAULT_RETRY_CODES

        result = ConnectorResult(success=False, code=0)
        for attempt in range(max_retries + 1):
            if attempt > 0:
                # 指数退避
                self.sleep(retry_delay * (2 ** (attempt - 1)) / 1000.0)

            result = self._make_request(method, url, headers, kwargs, timeout)
            result.attempts = attempt + 1

            if not self.should_retry(result, retry_codes):
                break
            logger.info("Retrying external request | url=%s | attempt=%s | code=%s",
                        url, attempt + 1, result.code)

        self.context.bus.emit("external.request", service["id"], url, method, result)
        return result

    def _make_request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        kwargs: Dict[str, Any],
        timeout: float,
    ) -> ConnectorResult:
        start = time.time()
        try:
            response = self._transport(method, url, headers, kwargs, timeout)
        except TransportFailure as e:
            return ConnectorResult(
                success=False,
                code=e.code,
                body=None,
                error=e.message,
                response_time_ms=round((time.time() - start) * 1000, 2),
            )

        code = response.status_code
        return ConnectorResult(
            success=200 <= code < 300,
            code=code,
            body=_decode_body(response),
            headers=dict(response.headers),
            error=f"HTTP {code}" if code >= 400 else None,
            response_time_ms=round((time.time() - start) * 1000, 2),
        )

    def _transport(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        kwargs: Dict[str, Any],
        timeout: float,
    ) -> httpx.Response:
        try:
            return self.http_client.request(method, url, headers=headers, timeout=timeout, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # 无响应：连接失败 / 超时 / URL 非法
            raise TransportFailure(str(e) or e.__class__.__name__) from e

    @staticmethod
    def should_retry(result: ConnectorResult, retry_codes: List[int]) -> bool:
        if result.success:
            return False
        if result.code == 0:
            return True
        return result.code in retry_codes

    # ------------------------------------------------------------------
    # 反向代理
    # ------------------------------------------------------------------

    def forward(
        self,
        request: InboundRequest,
        service_id,
        target_path: str = "",
        config: Optional[Dict[str, Any]] = None,
    ) -> HandlerResponse:
        """
        把入站请求转发到外部服务，原样返回上游状态码与响应体。

        Args:
            request: 入站请求
            service_id: 外部服务 ID
            target_path: 目标路径
            config: preserve_method / method / forward_headers / forward_header_list / custom_headers / timeout
        """
        config = config or {}
        service = self.get_service(service_id)
        if service is None:
            return HandlerResponse(404, {"message": "External service not found"})
        if not service.get("is_active", True):
            return HandlerResponse(503, {"message": "External service is disabled"})

        if config.get("preserve_method", True):
            method = request.method
        else:
            method = (config.get("method") or "POST").upper()

        headers: Dict[str, str] = {}
        if config.get("forward_headers"):
            for name in config.get("forward_header_list") or ["Content-Type", "Accept"]:
                value = request.header(name)
                if value:
                    headers[name] = value
        headers.update(config.get("custom_headers") or {})

        options = {k: v for k, v in config.items() if k in ("timeout", "content_type")}
        options["headers"] = headers
        result = self._execute(service, target_path, request.merged_data(), method, options)

        if result.code == 0:
            return HandlerResponse(502, {"message": "Failed to reach external service", "error": result.error})

        body = result.body
        if isinstance(body, str):
            try:
                decoded = json.loads(body) if body else None
            except ValueError:
                decoded = None
            body = decoded if decoded is not None else ({"raw": body} if body else {})
        if body is None:
            body = {}
        return HandlerResponse(result.code, body)

    # ------------------------------------------------------------------
    # 健康检查
    # ------------------------------------------------------------------

    def health_check(self, service_id) -> Dict[str, Any]:
        """
        GET health_check_config.endpoint（默认 /health）并分类：
        响应码等于 expected_code → healthy；其余 200-499 → degraded；否则 unhealthy。
        """
        service = self.get_service(service_id)
        if service is None:
            return {"status": HEALTH_UNKNOWN, "message": "Service not found"}

        config = service.get("health_check_config") or {}
        endpoint = config.get("endpoint") or "/health"
        expected_code = int(config.get("expected_code") or 200)
        timeout = config.get("timeout") or 10

        result = self._execute(service, endpoint, {}, "GET", {"timeout": timeout})
        if result.code == expected_code:
            status = HEALTH_HEALTHY
        elif 200 <= result.code < 500:
            status = HEALTH_DEGRADED
        else:
            status = HEALTH_UNHEALTHY

        checked_at = datetime.utcnow()
        with session_scope(self.context.session_factory) as db:
            record = db.query(ExternalService).filter(ExternalService.id == parse_uuid(service["id"])).first()
            if record is not None:
                record.health_status = status
                record.last_health_check = checked_at
        self.invalidate_cache(service["id"])

        logger.info("Health check | service_id=%s | status=%s | code=%s", service["id"], status, result.code)
        return {
            "status": status,
            "response_code": result.code,
            "response_time_ms": result.response_time_ms,
            "checked_at": checked_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # 服务管理
    # ------------------------------------------------------------------

    def _validate_service(self, data: Dict[str, Any], partial: bool = False) -> None:
        if not partial:
            require_fields(data, ["name", "base_url"])
        if "base_url" in data:
            valid, error = validate_url(data["base_url"])
            if not valid:
                raise ValidationError(f"Invalid base_url: {error}")
        if data.get("auth_type") is not None:
            try:
                AuthType(data["auth_type"])
            except ValueError:
                raise ValidationError(f"Unknown auth_type: {data['auth_type']}") from None

    def create_service(self, data: Dict[str, Any]) -> dict:
        self._validate_service(data)
        values = {k: data[k] for k in SERVICE_FIELDS if data.get(k) is not None}
        values.setdefault("timeout", DEFAULT_TIMEOUT)
        values.setdefault("is_active", True)
        values.setdefault("auth_type", AuthType.NONE.value)
        with session_scope(self.context.session_factory) as db:
            service = ExternalService(health_status=HEALTH_UNKNOWN, **values)
            db.add(service)
            db.flush()
            result = service.to_dict()
        logger.info("External service created | service_id=%s | name=%s", result["id"], result["name"])
        return result

    def update_service(self, service_id, data: Dict[str, Any]) -> dict:
        self._validate_service(data, partial=True)
        parsed = require_uuid(service_id, "External service")
        with session_scope(self.context.session_factory) as db:
            service = db.query(ExternalService).filter(ExternalService.id == parsed).first()
            if service is None:
                raise NotFound(f"External service not found: {service_id}")
            for key in SERVICE_FIELDS:
                if key in data:
                    setattr(service, key, data[key])
            db.flush()
            result = service.to_dict()
        self.invalidate_cache(service_id)
        self.auth.invalidate(service_id)
        return result

    def delete_service(self, service_id) -> None:
        parsed = require_uuid(service_id, "External service")
        with session_scope(self.context.session_factory) as db:
            deleted = db.query(ExternalService).filter(ExternalService.id == parsed).delete(synchronize_session=False)
        if not deleted:
            raise NotFound(f"External service not found: {service_id}")
        self.invalidate_cache(service_id)
        self.auth.invalidate(service_id)

    def get_service_record(self, service_id) -> dict:
        service = self.get_service(service_id)
        if service is None:
            raise NotFound(f"External service not found: {service_id}")
        return service

    def list_services(self, active_only: bool = False) -> List[dict]:
        with session_scope(self.context.session_factory) as db:
            query = db.query(ExternalService)
            if active_only:
                query = query.filter(ExternalService.is_active.is_(True))
            return [s.to_dict() for s in query.order_by(ExternalService.created_at.asc()).all()]

    def test_service(self, service_id, path: str = "", method: str = "GET",
                     data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """管理端手动调用外部服务"""
        self.get_service_record(service_id)
        return self.send(service_id, path, data or {}, method).to_dict()
