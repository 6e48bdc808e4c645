"""
端点注册表与分发器测试

- 路由编译、参数捕获、方法匹配、唯一性
- 分发顺序：系统开关/维护 → 限流 → 权限 → 拦截器 → 处理策略
- action / script / forward / etl 处理策略与失败边界
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import httpx
import pytest

from services.endpoint.dispatcher import DispatchInterceptor
from services.endpoint.registry import build_route
from shared.database import session_scope
from shared.errors import NotFound, ValidationError
from shared.http_types import HandlerResponse, InboundRequest
from shared.models.endpoint import CustomEndpoint


def _endpoint(context, **overrides):
    data = {
        "name": "Orders",
        "slug": "orders",
        "route": "",
        "method": "POST",
        "handler_type": "action",
        "handler_config": {"action_name": "order_received"},
    }
    data.update(overrides)
    return context.registry.create_endpoint(data)


def _request(path="custom/orders", method="POST", body=None, headers=None):
    return InboundRequest(
        method=method,
        path=path,
        headers=headers or {"Content-Type": "application/json"},
        body=json.dumps(body if body is not None else {}).encode(),
        client_host="127.0.0.1",
    )


class RecordingInterceptor(DispatchInterceptor):

    def __init__(self, name, log, short_circuit=None):
        self.name = name
        self.log = log
        self.short_circuit = short_circuit

    def before(self, request, definition):
        self.log.append(f"before:{self.name}")
        return self.short_circuit

    def after(self, request, definition, response):
        self.log.append(f"after:{self.name}")
        response.headers[f"X-{self.name}"] = "1"
        return response


# ==================== 注册表 ====================

class TestRegistry:

    def test_build_route_with_params(self):
        pattern, regex = build_route("Order Hooks", "/{order_id}/items")
        assert pattern == "custom/order-hooks/{order_id}/items"
        assert regex.match("custom/order-hooks/A-17/items").groupdict() == {"order_id": "A-17"}
        assert regex.match("custom/order-hooks/a.b/items") is None

    def test_match_method_and_params(self, context):
        _endpoint(context, route="/{order_id}", method="GET")
        matched = context.registry.match("GET", "/custom/orders/42/")
        assert matched is not None
        assert matched[1] == {"order_id": "42"}
        assert context.registry.match("POST", "custom/orders/42") is None

    def test_inactive_endpoint_not_bound(self, context):
        _endpoint(context, is_active=False)
        assert context.registry.match("POST", "custom/orders") is None

    def test_cache_invalidated_on_write(self, context):
        assert context.registry.bindings == []
        endpoint = _endpoint(context)
        assert len(context.registry.bindings) == 1
        context.registry.update_endpoint(endpoint["id"], {"is_active": False})
        assert context.registry.bindings == []

    def test_duplicate_route_rejected(self, context):
        _endpoint(context)
        with pytest.raises(ValidationError):
            _endpoint(context, name="Duplicate")
        _endpoint(context, name="Other method", method="PUT")

    def test_route_is_required_but_may_be_empty(self, context):
        data = {"name": "x", "slug": "x", "method": "POST", "handler_type": "action"}
        with pytest.raises(ValidationError):
            context.registry.create_endpoint(data)
        assert context.registry.create_endpoint({**data, "route": ""})["route"] == ""

    @pytest.mark.parametrize("field, value", [
        ("handler_type", "lambda"), ("permission_type", "oauth"), ("method", "TRACE"),
    ])
    def test_invalid_values_rejected(self, context, field, value):
        with pytest.raises(ValidationError):
            _endpoint(context, **{field: value})

    def test_max_endpoints(self, context):
        context.settings_store.set("max_endpoints", 1)
        _endpoint(context)
        with pytest.raises(ValidationError):
            _endpoint(context, slug="second")

    def test_delete(self, context):
        endpoint = _endpoint(context)
        context.registry.delete_endpoint(endpoint["id"])
        with pytest.raises(NotFound):
            context.registry.get_endpoint(endpoint["id"])
        with pytest.raises(NotFound):
            context.registry.delete_endpoint(endpoint["id"])


# ==================== 分发顺序 ====================

class TestDispatchGuards:

    def test_unknown_path_404(self, context):
        assert context.dispatcher.handle(_request("custom/nothing")).status_code == 404

    @pytest.mark.parametrize("key, value", [("system_enabled", False), ("maintenance_mode", True)])
    def test_unavailable_503(self, context, key, value):
        _endpoint(context)
        context.settings_store.set(key, value)
        response = context.dispatcher.handle(_request())
        assert response.status_code == 503

    def test_rate_limit_429(self, context):
        _endpoint(context, rate_limit=2)
        codes = [context.dispatcher.handle(_request()).status_code for _ in range(3)]
        assert codes == [200, 200, 429]

        response = context.dispatcher.handle(_request())
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert "Retry-After" in response.headers

    def test_permission_denied_skips_handler(self, context):
        fired = []
        context.bus.on("action.order_received", lambda data, definition, request: fired.append(data))
        _endpoint(context, permission_type="api_key", permission_config={"keys": ["k"]})

        assert context.dispatcher.handle(_request()).status_code == 401
        assert context.dispatcher.handle(_request(headers={"X-API-Key": "bad"})).status_code == 403
        assert fired == []
        assert context.dispatcher.handle(_request(headers={"X-API-Key": "k"})).status_code == 200
        assert len(fired) == 1

    def test_interceptor_order(self, context):
        log = []
        context.dispatcher.add_interceptor(RecordingInterceptor("a", log))
        context.dispatcher.add_interceptor(RecordingInterceptor("b", log))
        _endpoint(context)

        response = context.dispatcher.handle(_request())

        assert log == ["before:a", "before:b", "after:b", "after:a"]
        assert response.headers["X-a"] == "1"

    def test_interceptor_short_circuit(self, context):
        log = []
        blocked = HandlerResponse(418, {"message": "teapot"})
        context.dispatcher.add_interceptor(RecordingInterceptor("gate", log, short_circuit=blocked))
        _endpoint(context)

        response = context.dispatcher.handle(_request())

        assert response.status_code == 418
        assert log == ["before:gate"]


# ==================== 处理策略 ====================

class TestStrategies:

    def test_action_default_response(self, context):
        received = []
        context.bus.on("action.order_received", lambda data, definition, request: received.append(data))
        _endpoint(context, route="/{order_id}")

        response = context.dispatcher.handle(_request("custom/orders/9", body={"total": 5}))

        assert response.status_code == 200
        assert response.body == {"message": "Action executed successfully"}
        assert received == [{"order_id": "9", "total": 5}]

    def test_action_response_filter_sets_status(self, context):
        context.bus.add_filter(
            "action_response:order_received",
            lambda response, data, definition, request: {"status_code": 202, "accepted": data["id"]},
        )
        _endpoint(context)

        response = context.dispatcher.handle(_request(body={"id": 3}))

        assert response.status_code == 202
        assert response.body == {"accepted": 3}

    def test_action_without_name(self, context):
        _endpoint(context, handler_config={})
        assert context.dispatcher.handle(_request()).status_code == 400

    def test_script_callback(self, context):
        context.callbacks.register("sum_items", lambda data, definition, request: {"total": sum(data["items"])})
        _endpoint(context, handler_type="script", handler_config={"callback_name": "sum_items"})

        response = context.dispatcher.handle(_request(body={"items": [1, 2, 3]}))

        assert response.status_code == 200
        assert response.body == {"total": 6}

    def test_script_scalar_result_wrapped(self, context):
        context.callbacks.register("answer", lambda data, definition, request: 42)
        _endpoint(context, handler_type="script", handler_config={"callback_name": "answer"})
        assert context.dispatcher.handle(_request()).body == {"data": 42}

    def test_missing_script_callback(self, context):
        _endpoint(context, handler_type="script", handler_config={"callback_name": "ghost"})
        response = context.dispatcher.handle(_request())
        assert response.status_code == 400
        assert response.body["message"] == "Script callback not found"

    def test_unhandled_exception_is_500(self, context):
        def crash(data, definition, request):
            raise KeyError("secret detail")
        context.callbacks.register("crash", crash)
        _endpoint(context, handler_type="script", handler_config={"callback_name": "crash"})

        response = context.dispatcher.handle(_request())

        assert response.status_code == 500
        assert response.body["message"] == "Internal server error"

    def test_unhandled_exception_detail_in_debug(self, context):
        def crash(data, definition, request):
            raise RuntimeError("secret detail")
        context.callbacks.register("crash", crash)
        context.settings_store.set("debug_mode", True)
        _endpoint(context, handler_type="script", handler_config={"callback_name": "crash"})

        assert context.dispatcher.handle(_request()).body["message"] == "secret detail"

    def test_platform_error_keeps_status(self, context):
        def missing(data, definition, request):
            raise NotFound("Order not found")
        context.callbacks.register("lookup", missing)
        _endpoint(context, handler_type="script", handler_config={"callback_name": "lookup"})

        response = context.dispatcher.handle(_request())

        assert response.status_code == 404
        assert response.body["message"] == "Order not found"

    def test_stored_unknown_handler_type_is_400(self, context):
        _endpoint(context)
        with session_scope(context.session_factory) as db:
            db.query(CustomEndpoint).filter(CustomEndpoint.slug == "orders").update({"handler_type": "lambda"})
        context.registry.invalidate()

        response = context.dispatcher.handle(_request())

        assert response.status_code == 400
        assert response.body == {"message": "Invalid handler type"}

    def test_forward(self, context, upstream):
        upstream.handler = lambda request: httpx.Response(201, json={"forwarded": True})
        service = context.connector.create_service({"name": "crm", "base_url": "https://crm.example.com"})
        _endpoint(context, handler_type="forward",
                  handler_config={"external_service_id": service["id"], "target_path": "/orders"})

        response = context.dispatcher.handle(_request(body={"id": 1}))

        assert response.status_code == 201
        assert response.body == {"forwarded": True}
        assert str(upstream.requests[0].url) == "https://crm.example.com/orders"

    def test_forward_without_service(self, context):
        _endpoint(context, handler_type="forward", handler_config={})
        assert context.dispatcher.handle(_request()).status_code == 400

    def test_etl(self, context):
        template = context.etl.create_template({
            "name": "Uppercase",
            "field_mappings": {"name": {"source": "name", "transformations": ["uppercase"]}},
            "load_config": {"destination": "file", "filename": "dispatch.json"},
        })
        _endpoint(context, handler_type="etl", handler_config={"template_id": template["id"]})

        response = context.dispatcher.handle(_request(body={"name": "ada"}))

        assert response.status_code == 200
        job = context.etl.get_job(response.body["job_id"])
        assert job["transformed_data"] == {"name": "ADA"}

    def test_etl_without_template(self, context):
        _endpoint(context, handler_type="etl", handler_config={})
        assert context.dispatcher.handle(_request()).status_code == 400
