"""
端点注册表

把 custom_endpoints 中启用的定义编译为路由绑定:
  custom/{slug} + 存储的 route，{param} 段改写为命名捕获组 (?P<param>[a-zA-Z0-9_-]+)

绑定按进程缓存在 AppContext 上，任何写操作后失效，下次匹配时惰性重建。
同一 slug + route + method 在启用的定义中唯一。
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from services.endpoint.dispatcher import HandlerType
from services.endpoint.permissions import PermissionType
from shared.database import session_scope
from shared.errors import NotFound, ValidationError
from shared.models.endpoint import CustomEndpoint
from shared.utils.validators import require_fields, require_uuid, slugify, validate_route_pattern

logger = logging.getLogger(__name__)

ROUTE_PREFIX = "custom"
PARAM_PATTERN = re.compile(r"\{(\w+)\}")
PARAM_CAPTURE = r"(?P<{name}>[a-zA-Z0-9_-]+)"

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

ENDPOINT_FIELDS = [
    "name", "slug", "route", "method", "handler_type", "handler_config",
    "permission_type", "permission_config", "description", "is_active",
    "rate_limit", "cache_ttl", "timeout", "retry_policy", "request_schema", "response_schema",
]


@dataclass
class RouteBinding:
    """一条已编译的端点路由"""

    definition: Dict[str, Any]
    method: str
    pattern: str
    regex: re.Pattern = field(repr=False)

    def match(self, method: str, path: str) -> Optional[Dict[str, str]]:
        if method.upper() != self.method:
            return None
        found = self.regex.match(path)
        return found.groupdict() if found else None


def normalize_route(route: Optional[str]) -> str:
    route = (route or "").strip().strip("/")
    return f"/{route}" if route else ""


def build_route(slug: str, route: Optional[str] = None) -> Tuple[str, re.Pattern]:
    """
    构建路由模式与匹配正则。

    Args:
        slug: 端点 slug（会先规范化）
        route: 存储的路由模式，如 /{order_id}/items

    Returns:
        (模式字符串, 编译后的正则)，如 ("custom/orders/{order_id}", ...)
    """
    pattern = f"{ROUTE_PREFIX}/{slugify(slug)}{normalize_route(route)}"
    parts = []
    last = 0
    for found in PARAM_PATTERN.finditer(pattern):
        parts.append(re.escape(pattern[last:found.start()]))
        parts.append(PARAM_CAPTURE.format(name=found.group(1)))
        last = found.end()
    parts.append(re.escape(pattern[last:]))
    return pattern, re.compile("^" + "".join(parts) + "/?$")


def normalize_path(path: str) -> str:
    """去掉前后斜杠，得到 custom/... 形式的相对路径"""
    return (path or "").strip("/")


class EndpointRegistry:
    """
    端点注册表

    Args:
        context: AppContext（session_factory / bus / settings_store）
    """

    def __init__(self, context):
        self.context = context
        self._bindings: Optional[List[RouteBinding]] = None

    # ------------------------------------------------------------------
    # 路由绑定
    # ------------------------------------------------------------------

    def register_all(self, definitions: Optional[List[Dict[str, Any]]] = None) -> List[RouteBinding]:
        """
        为所有启用的定义构建绑定。

        Args:
            definitions: 定义字典列表，缺省时从数据库读取

        Returns:
            绑定列表（同时成为当前缓存）
        """
        if definitions is None:
            definitions = self.list_endpoints(active_only=True)

        bindings = []
        for definition in definitions:
            if not definition.get("is_active", True):
                continue
            pattern, regex = build_route(definition["slug"], definition.get("route"))
            bindings.append(RouteBinding(
                definition=definition,
                method=(definition.get("method") or "POST").upper(),
                pattern=pattern,
                regex=regex,
            ))
        self._bindings = bindings
        logger.debug("Endpoint routes registered | count=%s", len(bindings))
        return bindings

    @property
    def bindings(self) -> List[RouteBinding]:
        if self._bindings is None:
            self.register_all()
        return self._bindings

    def invalidate(self) -> None:
        self._bindings = None

    def match(self, method: str, path: str) -> Optional[Tuple[Dict[str, Any], Dict[str, str]]]:
        """
        匹配入站请求。

        Args:
            method: HTTP 方法
            path: custom/<slug>[/<route>] 形式的路径

        Returns:
            (定义, 路径参数)；未匹配返回 None
        """
        path = normalize_path(path)
        for binding in self.bindings:
            params = binding.match(method, path)
            if params is not None:
                return binding.definition, params
        return None

    # ------------------------------------------------------------------
    # 定义管理
    # ------------------------------------------------------------------

    def _validate(self, data: Dict[str, Any]) -> None:
        if "slug" in data and not slugify(data["slug"]):
            raise ValidationError("Invalid slug")
        if "method" in data and str(data["method"]).upper() not in ALLOWED_METHODS:
            raise ValidationError(f"Invalid method: {data['method']}")
        if "handler_type" in data:
            try:
                HandlerType(data["handler_type"])
            except ValueError:
                raise ValidationError(f"Invalid handler type: {data['handler_type']}") from None
        if data.get("permission_type") is not None:
            try:
                PermissionType(data["permission_type"])
            except ValueError:
                raise ValidationError(f"Invalid permission type: {data['permission_type']}") from None
        if "route" in data:
            valid, error = validate_route_pattern(data["route"] or "")
            if not valid:
                raise ValidationError(error)

    def _ensure_unique(self, db, slug: str, route: str, method: str, exclude_id=None) -> None:
        query = db.query(CustomEndpoint).filter(
            CustomEndpoint.slug == slug,
            CustomEndpoint.route == route,
            CustomEndpoint.method == method,
            CustomEndpoint.is_active.is_(True),
        )
        if exclude_id is not None:
            query = query.filter(CustomEndpoint.id != exclude_id)
        if query.first() is not None:
            raise ValidationError(f"Endpoint already exists: {method} {ROUTE_PREFIX}/{slug}{route}")

    def create_endpoint(self, data: Dict[str, Any]) -> dict:
        """
        创建端点定义。

        Raises:
            ValidationError: 缺少必填字段、取值非法、路由冲突或超出 max_endpoints
        """
        require_fields(data, ["name", "slug", "method", "handler_type"])
        if "route" not in data:
            raise ValidationError("Missing required fields: route")
        self._validate(data)

        values = {k: data[k] for k in ENDPOINT_FIELDS if k in data}
        values["slug"] = slugify(values["slug"])
        values["route"] = normalize_route(values.get("route"))
        values["method"] = values["method"].upper()
        values["permission_type"] = values.get("permission_type") or PermissionType.PUBLIC.value
        if values.get("is_active") is None:
            values["is_active"] = True

        with session_scope(self.context.session_factory) as db:
            max_endpoints = self.context.settings_store.get("max_endpoints")
            if max_endpoints and db.query(CustomEndpoint).count() >= int(max_endpoints):
                raise ValidationError(f"Maximum number of endpoints reached: {max_endpoints}")
            if values["is_active"]:
                self._ensure_unique(db, values["slug"], values["route"], values["method"])
            endpoint = CustomEndpoint(**values)
            db.add(endpoint)
            db.flush()
            result = endpoint.to_dict()

        self.invalidate()
        logger.info("Endpoint created | endpoint_id=%s | slug=%s", result["id"], result["slug"])
        self.context.bus.emit("endpoint.created", result["id"], result)
        return result

    def update_endpoint(self, endpoint_id, data: Dict[str, Any]) -> dict:
        parsed = require_uuid(endpoint_id, "Endpoint")
        self._validate(data)
        with session_scope(self.context.session_factory) as db:
            endpoint = db.query(CustomEndpoint).filter(CustomEndpoint.id == parsed).first()
            if endpoint is None:
                raise NotFound(f"Endpoint not found: {endpoint_id}")
            for key in ENDPOINT_FIELDS:
                if key in data:
                    setattr(endpoint, key, data[key])
            endpoint.slug = slugify(endpoint.slug)
            endpoint.route = normalize_route(endpoint.route)
            endpoint.method = endpoint.method.upper()
            if endpoint.is_active:
                self._ensure_unique(db, endpoint.slug, endpoint.route, endpoint.method, exclude_id=parsed)
            db.flush()
            result = endpoint.to_dict()

        self.invalidate()
        self.context.bus.emit("endpoint.updated", result["id"], result)
        return result

    def delete_endpoint(self, endpoint_id) -> None:
        parsed = require_uuid(endpoint_id, "Endpoint")
        with session_scope(self.context.session_factory) as db:
            deleted = db.query(CustomEndpoint).filter(CustomEndpoint.id == parsed).delete(synchronize_session=False)
        if not deleted:
            raise NotFound(f"Endpoint not found: {endpoint_id}")
        self.invalidate()
        logger.info("Endpoint deleted | endpoint_id=%s", endpoint_id)
        self.context.bus.emit("endpoint.deleted", str(parsed))

    def get_endpoint(self, endpoint_id) -> dict:
        parsed = require_uuid(endpoint_id, "Endpoint")
        with session_scope(self.context.session_factory) as db:
            endpoint = db.query(CustomEndpoint).filter(CustomEndpoint.id == parsed).first()
            if endpoint is None:
                raise NotFound(f"Endpoint not found: {endpoint_id}")
            return endpoint.to_dict()

    def list_endpoints(self, active_only: bool = False, handler_type: Optional[str] = None) -> List[dict]:
        with session_scope(self.context.session_factory) as db:
            query = db.query(CustomEndpoint)
            if active_only:
                query = query.filter(CustomEndpoint.is_active.is_(True))
            if handler_type:
                query = query.filter(CustomEndpoint.handler_type == handler_type)
            return [e.to_dict() for e in query.order_by(CustomEndpoint.created_at.asc()).all()]
