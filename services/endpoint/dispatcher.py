"""
请求分发器

dispatch 顺序:
  1. 系统关闭（system_enabled=false）或维护模式 → 503
  2. 端点级限流（definition.rate_limit，每分钟请求数）→ 429
  3. 权限校验 → 401 / 403，不调用处理策略
  4. 拦截器 before（按注册顺序，任一返回响应即短路）
  5. 处理策略（webhook / action / script / forward / etl），未知类型 → 400
  6. 拦截器 after（按注册逆序，可改写响应）

处理策略在失败边界内执行：PlatformError 按其状态码返回，其余未捕获异常 → 500，
仅在调试模式下返回异常消息。
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from services.connector.rate_limiter import SlidingWindowRateLimiter
from shared.errors import HandlerFailure, PermissionDenied, PlatformError
from shared.http_types import HandlerResponse, InboundRequest

logger = logging.getLogger(__name__)

ENDPOINT_RATE_LIMIT_PREFIX = "endpoint:"


class HandlerType(str, Enum):
    WEBHOOK = "webhook"
    ACTION = "action"
    SCRIPT = "script"
    FORWARD = "forward"
    ETL = "etl"


class DispatchInterceptor:
    """
    分发拦截器基类

    before 返回 HandlerResponse 时跳过处理策略；after 返回改写后的响应。
    """

    def before(self, request: InboundRequest, definition: Dict[str, Any]) -> Optional[HandlerResponse]:
        return None

    def after(self, request: InboundRequest, definition: Dict[str, Any],
              response: HandlerResponse) -> HandlerResponse:
        return response


ScriptCallback = Callable[[Dict[str, Any], Dict[str, Any], InboundRequest], Any]


def _message(status_code: int, message: str, **extra) -> HandlerResponse:
    body = {"message": message}
    body.update(extra)
    return HandlerResponse(status_code, body)


class Dispatcher:
    """
    请求分发器

    Args:
        context: AppContext（registry / permissions / webhooks / etl / connector /
            actions / callbacks / bus / redis / settings / settings_store）
    """

    def __init__(self, context):
        self.context = context
        self.interceptors: List[DispatchInterceptor] = []
        self.rate_limiter = SlidingWindowRateLimiter(context.redis)
        self._strategies: Dict[HandlerType, Callable[[InboundRequest, Dict[str, Any], Dict[str, Any]], HandlerResponse]] = {
            HandlerType.WEBHOOK: self._handle_webhook,
            HandlerType.ACTION: self._handle_action,
            HandlerType.SCRIPT: self._handle_script,
            HandlerType.FORWARD: self._handle_forward,
            HandlerType.ETL: self._handle_etl,
        }

    def add_interceptor(self, interceptor: DispatchInterceptor) -> None:
        self.interceptors.append(interceptor)

    def remove_interceptor(self, interceptor: DispatchInterceptor) -> None:
        self.interceptors = [i for i in self.interceptors if i is not interceptor]

    def _debug(self) -> bool:
        return bool(self.context.settings.DEBUG or self.context.settings_store.is_debug())

    # ------------------------------------------------------------------
    # 入口
    # ------------------------------------------------------------------

    def handle(self, request: InboundRequest) -> HandlerResponse:
        """
        按 (method, path) 匹配端点并分发。

        Args:
            request: path 为 custom/<slug>[/<route>] 形式的入站请求

        Returns:
            处理结果；未匹配 404
        """
        store = self.context.settings_store
        if not store.is_enabled() or store.is_maintenance():
            return _message(503, "Service temporarily unavailable")

        matched = self.context.registry.match(request.method, request.path)
        if matched is None:
            return _message(404, "Endpoint not found")
        definition, params = matched
        request.path_params = params
        return self.dispatch(request, definition)

    def dispatch(self, request: InboundRequest, definition: Dict[str, Any]) -> HandlerResponse:
        store = self.context.settings_store
        if not store.is_enabled() or store.is_maintenance():
            return _message(503, "Service temporarily unavailable")

        limited = self._check_rate_limit(definition)
        if limited is not None:
            return limited

        try:
            self.context.permissions.check(request, definition)
        except PermissionDenied as e:
            return _message(e.status_code, e.message)

        for interceptor in self.interceptors:
            short_circuit = interceptor.before(request, definition)
            if short_circuit is not None:
                return short_circuit

        response = self._run_strategy(request, definition)

        for interceptor in reversed(self.interceptors):
            response = interceptor.after(request, definition, response)
        return response

    def _check_rate_limit(self, definition: Dict[str, Any]) -> Optional[HandlerResponse]:
        limit = definition.get("rate_limit")
        if not limit:
            return None
        result = self.rate_limiter.check(f"{ENDPOINT_RATE_LIMIT_PREFIX}{definition['id']}", int(limit), 60)
        if result.allowed:
            return None
        response = _message(429, "Rate limit exceeded")
        response.headers.update(result.headers)
        return response

    def _run_strategy(self, request: InboundRequest, definition: Dict[str, Any]) -> HandlerResponse:
        try:
            handler_type = HandlerType(definition.get("handler_type"))
        except ValueError:
            return _message(400, "Invalid handler type")

        config = definition.get("handler_config") or {}
        try:
            return self._strategies[handler_type](request, definition, config)
        except PlatformError as e:
            return _message(e.status_code, e.message)
        except Exception as e:
            logger.exception(
                "Endpoint handler failed | endpoint_id=%s | handler_type=%s",
                definition.get("id"), handler_type.value,
            )
            self.context.event_logger.error(
                "endpoint", "Endpoint handler failed",
                {"endpoint_id": definition.get("id"), "error": str(e)},
                request=request,
            )
            failure = HandlerFailure(str(e) if self._debug() else "Internal server error")
            return _message(failure.status_code, failure.message)

    # ------------------------------------------------------------------
    # 处理策略
    # ------------------------------------------------------------------

    def _handle_webhook(self, request, definition, config) -> HandlerResponse:
        return self.context.webhooks.receive(request, definition, config)

    def _handle_action(self, request, definition, config) -> HandlerResponse:
        action_name = config.get("action_name")
        if not action_name:
            return _message(400, "No action configured")

        data = request.merged_data()
        actions = self.context.actions
        if actions.exists(action_name):
            response = actions.execute(action_name, data, definition, request)
        else:
            response = actions.do_action(action_name, data, definition, request)
        if isinstance(response, HandlerResponse):
            return response
        if isinstance(response, dict):
            response = dict(response)
            status_code = int(response.pop("status_code", 200))
            return HandlerResponse(status_code, response)
        return HandlerResponse(200, {"data": response})

    def _handle_script(self, request, definition, config) -> HandlerResponse:
        callback_name = config.get("callback_name")
        if not callback_name or not self.context.callbacks.has(callback_name):
            return _message(400, "Script callback not found")

        callback: ScriptCallback = self.context.callbacks.get(callback_name)
        result = callback(request.merged_data(), definition, request)
        if isinstance(result, HandlerResponse):
            return result
        if isinstance(result, dict):
            return HandlerResponse(200, result)
        return HandlerResponse(200, {"data": result})

    def _handle_forward(self, request, definition, config) -> HandlerResponse:
        service_id = config.get("external_service_id")
        if not service_id:
            return _message(400, "No external service configured")
        return self.context.connector.forward(request, service_id, config.get("target_path") or "", config)

    def _handle_etl(self, request, definition, config) -> HandlerResponse:
        template_id = config.get("template_id")
        if not template_id:
            return _message(400, "No ETL template configured")
        return self.context.etl.process(request, template_id, definition)
