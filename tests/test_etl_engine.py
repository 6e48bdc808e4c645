"""
ETL 引擎测试

- 模板 CRUD 与 load_config 校验
- 作业执行：file / database / external_service / action 目标
- 失败阶段记录与调试模式下的错误信息
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import httpx
import pytest

from shared.errors import NotFound, ValidationError
from shared.http_types import InboundRequest


def _template(context, **overrides):
    data = {
        "name": "Order import",
        "field_mappings": {"name": {"source": "name", "transformations": ["uppercase"]}},
        "load_config": {"destination": "file", "format": "json", "filename": "orders.json"},
    }
    data.update(overrides)
    return context.etl.create_template(data)


# ==================== 模板 ====================

class TestTemplates:

    def test_create_and_get(self, context):
        template = _template(context)
        assert template["is_active"] is True
        assert context.etl.get_template(template["id"])["name"] == "Order import"

    def test_name_is_required(self, context):
        with pytest.raises(ValidationError):
            context.etl.create_template({"load_config": {"destination": "file"}})

    def test_unknown_destination_rejected(self, context):
        with pytest.raises(ValidationError):
            _template(context, load_config={"destination": "ftp"})

    def test_update_and_delete(self, context):
        template = _template(context)
        updated = context.etl.update_template(template["id"], {"is_active": False})
        assert updated["is_active"] is False

        context.etl.delete_template(template["id"])
        with pytest.raises(NotFound):
            context.etl.get_template(template["id"])

    def test_list_active_only(self, context):
        _template(context, name="a")
        _template(context, name="b", is_active=False)
        names = [t["name"] for t in context.etl.list_templates(active_only=True)]
        assert names == ["a"]


# ==================== 作业执行 ====================

class TestRunJob:

    def test_file_destination(self, context, app_settings):
        template = _template(context)
        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 200
        assert response.body["message"] == "ETL job completed successfully"
        job = context.etl.get_job(response.body["job_id"])
        assert job["status"] == "completed"
        assert job["transformed_data"] == {"name": "ADA"}

        path = os.path.join(app_settings.EXPORT_DIR, "etl", "orders.json")
        with open(path, encoding="utf-8") as fp:
            assert json.load(fp) == {"name": "ADA"}
        assert response.body["result"]["url"] == "http://testserver/exports/etl/orders.json"

    def test_file_bytes_written_counts_utf8_bytes(self, context):
        template = _template(context, field_mappings={"name": "name"},
                             load_config={"destination": "file", "format": "json", "filename": "names.json"})

        response = context.etl.test_template(template["id"], {"name": "张三 Müller"})

        result = response.body["result"]
        assert result["bytes_written"] == os.path.getsize(result["path"])
        with open(result["path"], encoding="utf-8") as fp:
            assert json.load(fp) == {"name": "张三 Müller"}

    def test_dotted_target_names_stay_flat(self, context):
        template = _template(context, field_mappings={
            "customer.name": "order.customer.name",
            "first_sku": "order.items[0].sku",
        })

        response = context.etl.test_template(template["id"], {
            "order": {"customer": {"name": "Ada"}, "items": [{"sku": "A1"}]},
        })

        job = context.etl.get_job(response.body["job_id"])
        assert job["transformed_data"] == {"customer.name": "Ada", "first_sku": "A1"}

    def test_database_destination(self, context):
        context.database.create_table("etl_orders", {"name": "string"})
        template = _template(context, load_config={"destination": "database", "table_name": "etl_orders"})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 200
        assert response.body["result"]["success"] is True
        assert context.database.get_rows_data("etl_orders").data[0]["name"] == "ADA"

    def test_external_service_destination(self, context, upstream):
        service = context.connector.create_service({"name": "crm", "base_url": "https://crm.example.com"})
        template = _template(
            context,
            external_service_id=service["id"],
            load_config={"destination": "external_service", "endpoint_path": "/orders"},
        )

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 200
        assert str(upstream.requests[0].url) == "https://crm.example.com/orders"
        assert json.loads(upstream.requests[0].content) == {"name": "ADA"}
        job = context.etl.get_job(response.body["job_id"])
        assert job["external_response_code"] == 200

    def test_action_destination_emits_hook(self, context):
        received = []
        context.bus.on("orders_loaded", lambda data, template, config: received.append(data))
        template = _template(context, load_config={"destination": "action", "action_name": "orders_loaded"})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 200
        assert received == [{"name": "ADA"}]

    def test_load_failure_records_stage(self, context):
        template = _template(context, load_config={"destination": "database"})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 500
        assert response.body["message"] == "ETL job failed"
        job = context.etl.get_job(response.body["job_id"])
        assert job["status"] == "failed"
        assert job["error_stage"] == "load"
        assert "table name" in job["error_message"]
        assert job["transformed_data"] == {"name": "ADA"}

    def test_debug_mode_exposes_error(self, context):
        context.settings_store.set("debug_mode", True)
        template = _template(context, load_config={"destination": "database"})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 500
        assert response.body["message"] == "No table name configured for database load"

    def test_transform_failure_records_stage(self, context):
        def explode(value, spec):
            raise RuntimeError("boom")
        context.transformers.register("explode", explode)
        template = _template(context, field_mappings={"name": {"source": "name", "transformations": ["explode"]}})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        job = context.etl.get_job(response.body["job_id"])
        assert job["error_stage"] == "transform"
        assert job["error_message"] == "boom"

    def test_external_service_error_still_completes(self, context, upstream):
        upstream.handler = lambda request: httpx.Response(404, json={"error": "nope"})
        service = context.connector.create_service({"name": "crm", "base_url": "https://crm.example.com"})
        template = _template(context, external_service_id=service["id"], load_config={"destination": "external_service"})

        response = context.etl.test_template(template["id"], {"name": "ada"})

        assert response.status_code == 200
        assert response.body["result"]["success"] is False
        assert response.body["result"]["response_code"] == 404


# ==================== 端点入口 ====================

class TestProcess:

    def _request(self, body):
        return InboundRequest(
            method="POST",
            path="custom/import",
            headers={"Content-Type": "application/json"},
            body=json.dumps(body).encode(),
        )

    def test_unknown_template(self, context):
        response = context.etl.process(self._request({}), "00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404

    def test_inactive_template(self, context):
        template = _template(context, is_active=False)
        response = context.etl.process(self._request({"name": "ada"}), template["id"])
        assert response.status_code == 400

    def test_merges_query_params_into_input(self, context):
        template = _template(context, field_mappings={
            "name": {"source": "name", "transformations": ["uppercase"]},
            "source": "source",
        })
        request = self._request({"name": "ada"})
        request.query_params = {"source": "web"}

        response = context.etl.process(request, template["id"])

        job = context.etl.get_job(response.body["job_id"])
        assert job["input_data"] == {"source": "web", "name": "ada"}
        assert job["transformed_data"] == {"name": "ADA", "source": "web"}

    def test_cleanup_keeps_recent_jobs(self, context):
        template = _template(context)
        context.etl.test_template(template["id"], {"name": "ada"})
        assert context.etl.cleanup_jobs(days_old=30) == 0
        assert context.etl.list_jobs(template_id=template["id"])["total"] == 1
