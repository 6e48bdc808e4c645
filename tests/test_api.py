"""
HTTP 层测试（TestClient）

- 自定义端点入口：webhook 端到端、路由参数、维护模式、X-Request-Id
- 管理 API 认证：无凭证 401、错误凭证 403、API Key / 管理员 JWT 放行
- 管理 API 各分组的主要操作与统一错误格式
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import pytest
from fastapi.testclient import TestClient

from services.endpoint.main import create_app
from shared.utils.jwt import create_access_token
from shared.utils.security import compute_signature

MANAGE = "/api/v1/manage"
AUTH = {"X-API-Key": "test-management-key"}


@pytest.fixture
def client(context):
    return TestClient(create_app(context))


def _create_endpoint(client, **overrides):
    data = {
        "name": "Orders",
        "slug": "orders",
        "route": "",
        "handler_type": "webhook",
        "handler_config": {"echo_payload": True},
    }
    data.update(overrides)
    response = client.post(f"{MANAGE}/endpoints", json=data, headers=AUTH)
    assert response.status_code == 201, response.text
    return response.json()


# ==================== 自定义端点 ====================

class TestCustomEndpoints:

    def test_webhook_end_to_end(self, client, context):
        endpoint = _create_endpoint(client)

        response = client.post("/api/v1/custom/orders", json={"id": 7})

        assert response.status_code == 200
        assert response.json()["payload"] == {"id": 7}
        assert response.headers["X-Request-Id"]

        logs = context.webhooks.list_logs(endpoint_id=endpoint["id"])
        assert logs["total"] == 1
        assert logs["items"][0]["status"] == "processed"
        assert json.loads(logs["items"][0]["request_payload"]) == {"id": 7}

    def test_route_params_and_method(self, client, context):
        context.callbacks.register("echo", lambda data, definition, request: {"data": data})
        _create_endpoint(client, route="/{order_id}", method="GET", handler_type="script",
                         handler_config={"callback_name": "echo"})

        response = client.get("/api/v1/custom/orders/A1", params={"expand": "items"})

        assert response.status_code == 200
        assert response.json() == {"data": {"order_id": "A1", "expand": "items"}}
        assert client.post("/api/v1/custom/orders/A1").status_code == 404

    def test_unknown_endpoint(self, client):
        response = client.post("/api/v1/custom/missing", json={})
        assert response.status_code == 404
        assert response.json() == {"message": "Endpoint not found"}

    def test_incoming_request_id_is_kept(self, client):
        _create_endpoint(client)
        response = client.post("/api/v1/custom/orders", json={}, headers={"X-Request-Id": "trace-1"})
        assert response.headers["X-Request-Id"] == "trace-1"

    def test_maintenance_mode(self, client):
        _create_endpoint(client)
        client.post(f"{MANAGE}/system/maintenance/enable", json={"reason": "upgrade"}, headers=AUTH)

        assert client.post("/api/v1/custom/orders", json={}).status_code == 503

        client.post(f"{MANAGE}/system/maintenance/disable", headers=AUTH)
        assert client.post("/api/v1/custom/orders", json={}).status_code == 200

    def test_multipart_form(self, client, context):
        context.callbacks.register("upload", lambda data, definition, request: {"data": data})
        _create_endpoint(client, handler_type="script", handler_config={"callback_name": "upload"})

        response = client.post(
            "/api/v1/custom/orders",
            data={"note": "hello"},
            files={"file": ("report.csv", b"a,b\n", "text/csv")},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["note"] == "hello"
        assert data["file"] == {"filename": "report.csv", "content_type": "text/csv"}

    def test_signed_multipart_webhook(self, client, context):
        endpoint = _create_endpoint(client, handler_config={
            "echo_payload": True, "signature_secret": "s3cret", "require_signature": True,
        })
        boundary = "platform-boundary"
        body = (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="event"\r\n\r\n'
            "order.created\r\n"
            f"--{boundary}--\r\n"
        ).encode()

        response = client.post(
            "/api/v1/custom/orders",
            content=body,
            headers={
                "Content-Type": f"multipart/form-data; boundary={boundary}",
                "X-Webhook-Signature": compute_signature(body, "s3cret", "sha256", "hex"),
            },
        )

        assert response.status_code == 200, response.text
        assert response.json()["payload"] == {"event": "order.created"}
        log = context.webhooks.list_logs(endpoint_id=endpoint["id"])["items"][0]
        assert log["signature_valid"] is True
        assert "order.created" in log["request_payload"]

    def test_health_and_root(self, client):
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/").json()["status"] == "running"


# ==================== 管理 API 认证 ====================

class TestManagementAuth:

    def test_no_credentials(self, client):
        response = client.get(f"{MANAGE}/endpoints")
        assert response.status_code == 401
        assert response.json()["error_code"] == "unauthorized"

    def test_wrong_api_key(self, client):
        assert client.get(f"{MANAGE}/endpoints", headers={"X-API-Key": "wrong"}).status_code == 403

    def test_api_key(self, client):
        assert client.get(f"{MANAGE}/endpoints", headers=AUTH).status_code == 200

    def test_admin_jwt(self, client):
        token = create_access_token({"sub": "ops", "role": "admin"})
        response = client.get(f"{MANAGE}/endpoints", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_non_admin_jwt(self, client):
        token = create_access_token({"sub": "ops", "role": "viewer"})
        response = client.get(f"{MANAGE}/endpoints", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403


# ==================== 管理 API ====================

class TestManagementApi:

    def test_endpoint_crud(self, client):
        endpoint = _create_endpoint(client)
        url = f"{MANAGE}/endpoints/{endpoint['id']}"

        assert client.get(url, headers=AUTH).json()["slug"] == "orders"
        updated = client.put(url, json={"description": "Shop orders"}, headers=AUTH).json()
        assert updated["description"] == "Shop orders"
        assert updated["handler_type"] == "webhook"
        assert client.delete(url, headers=AUTH).status_code == 204

        response = client.get(url, headers=AUTH)
        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_endpoint_validation(self, client):
        response = client.post(f"{MANAGE}/endpoints", json={"name": "x"}, headers=AUTH)
        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"

        response = client.post(f"{MANAGE}/endpoints", headers=AUTH, json={
            "name": "x", "slug": "x", "route": "", "handler_type": "lambda",
        })
        assert response.status_code == 400

    def test_webhook_logs_and_retry(self, client):
        _create_endpoint(client, handler_config={"signature_secret": "s", "require_signature": True})
        webhook_id = client.post("/api/v1/custom/orders", json={"id": 1}).json()["webhook_id"]

        logs = client.get(f"{MANAGE}/webhooks/logs", params={"status": "failed"}, headers=AUTH).json()
        assert logs["total"] == 1

        retried = client.post(f"{MANAGE}/webhooks/logs/{webhook_id}/retry", headers=AUTH).json()
        assert retried["retry_count"] == 1
        assert client.get(f"{MANAGE}/webhooks/logs/{webhook_id}", headers=AUTH).json()["status"] == "processed"

        assert client.post(f"{MANAGE}/webhooks/cleanup", json={"days_old": 30}, headers=AUTH).json() == {"deleted": 0}

    def test_etl_template_test_run(self, client):
        template = client.post(f"{MANAGE}/etl/templates", headers=AUTH, json={
            "name": "Uppercase",
            "field_mappings": {"name": {"source": "name", "transformations": ["uppercase"]}},
            "load_config": {"destination": "file", "filename": "api.json"},
        }).json()

        response = client.post(f"{MANAGE}/etl/templates/{template['id']}/test",
                               json={"test_data": {"name": "ada"}}, headers=AUTH)

        assert response.status_code == 200
        job_id = response.json()["job_id"]
        job = client.get(f"{MANAGE}/etl/jobs/{job_id}", headers=AUTH).json()
        assert job["transformed_data"] == {"name": "ADA"}
        assert client.get(f"{MANAGE}/etl/jobs", headers=AUTH).json()["total"] == 1

    def test_service_health_and_test_call(self, client, upstream):
        service = client.post(f"{MANAGE}/services", headers=AUTH, json={
            "name": "crm", "base_url": "https://crm.example.com",
        }).json()

        health = client.post(f"{MANAGE}/services/{service['id']}/health", headers=AUTH).json()
        assert health["status"] == "healthy"

        result = client.post(f"{MANAGE}/services/{service['id']}/test", headers=AUTH,
                             json={"path": "/ping", "method": "GET"}).json()
        assert result["success"] is True
        assert result["body"] == {"ok": True}

    def test_tasks(self, client, context):
        context.task_handlers.register("noop", lambda config, task: {"success": True, "message": "done"})
        task = client.post(f"{MANAGE}/tasks", headers=AUTH, json={
            "name": "Noop", "task_type": "custom", "handler": "noop", "frequency": "daily",
        }).json()

        assert client.post(f"{MANAGE}/tasks/{task['id']}/pause", headers=AUTH).json()["status"] == "paused"
        assert client.post(f"{MANAGE}/tasks/{task['id']}/resume", headers=AUTH).json()["status"] == "pending"
        assert client.post(f"{MANAGE}/tasks/{task['id']}/run", headers=AUTH).json()["message"] == "done"

    def test_actions(self, client, context):
        context.actions.execute("log", {"a": 1})

        listed = client.get(f"{MANAGE}/actions", params={"group": "builtin"}, headers=AUTH).json()
        assert "store_data" in [item["name"] for item in listed["items"]]
        assert "log" in listed["groups"]["builtin"]

        log = client.get(f"{MANAGE}/actions/log", headers=AUTH).json()["items"]
        assert log[-1]["handler"] == "log"

        assert client.delete(f"{MANAGE}/actions/log", headers=AUTH).status_code == 204
        assert client.get(f"{MANAGE}/actions/log", headers=AUTH).json()["items"] == []

    def test_events(self, client, context):
        context.event_logger.error("etl", "ETL job failed", {"job_id": "1"})

        events = client.get(f"{MANAGE}/events", params={"category": "etl"}, headers=AUTH).json()
        assert events["total"] == 1

        stats = client.get(f"{MANAGE}/events/statistics", headers=AUTH).json()
        assert stats["by_level"]["error"] == 1

        exported = client.post(f"{MANAGE}/events/export", json={"format": "csv"}, headers=AUTH).json()
        assert exported["url"].startswith("http://testserver/exports/")
        assert os.path.exists(exported["path"])

    def test_config(self, client, context):
        response = client.put(f"{MANAGE}/config", json={"settings": {"log_level": "warning"}}, headers=AUTH)
        assert response.json() == {"updated": {"log_level": "warning"}}
        assert context.event_logger.min_level == "warning"

        value = client.get(f"{MANAGE}/config/log_level", headers=AUTH).json()
        assert value == {"key": "log_level", "value": "warning", "default": "info"}
        assert client.get(f"{MANAGE}/config/nope", headers=AUTH).status_code == 404

        assert client.get(f"{MANAGE}/config/export", headers=AUTH).json() == {"log_level": "warning"}
        grouped = client.get(f"{MANAGE}/config", params={"grouped": True}, headers=AUTH).json()
        assert grouped["system"]["log_level"] == "warning"

        bad = client.put(f"{MANAGE}/config", json={"settings": {"max_endpoints": 0}}, headers=AUTH)
        assert bad.status_code == 400

        reset = client.post(f"{MANAGE}/config/reset", json={"keys": ["log_level"]}, headers=AUTH).json()
        assert reset["log_level"] == "info"

        imported = client.post(f"{MANAGE}/config/import", headers=AUTH,
                               json={"payload": json.dumps({"debug_mode": "yes"})}).json()
        assert imported == {"imported": {"debug_mode": True}}

    def test_system(self, client):
        _create_endpoint(client)

        status = client.get(f"{MANAGE}/system/status", headers=AUTH).json()
        assert status["registered_routes"] == 1
        assert status["maintenance_mode"] is False

        stats = client.get(f"{MANAGE}/system/statistics", headers=AUTH).json()
        assert stats["endpoints"] == 1
        assert stats["active_endpoints"] == 1

        health = client.get(f"{MANAGE}/system/health", headers=AUTH).json()
        assert set(health["components"]) == {"database", "redis"}
