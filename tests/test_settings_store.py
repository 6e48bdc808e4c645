"""
配置存储测试

- 默认值回退、类型转换与校验
- set_many 全部成功或全部失败
- reset / export / import
- 扩展配置项注册
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json

import pytest
from hypothesis import given, strategies as st

from shared.errors import ValidationError
from shared.settings_store import DEFAULTS, GROUPS, SettingsStore, validate_value


@pytest.fixture
def store(context):
    return context.settings_store


class TestValidateValue:

    @pytest.mark.parametrize("raw, expected", [
        ("yes", True), ("off", False), (1, True), (0, False), ("TRUE", True),
    ])
    def test_bool_conversion(self, raw, expected):
        assert validate_value("debug_mode", raw, {"type": "bool"}) == (True, expected, None)

    def test_bool_rejects_garbage(self):
        valid, _, error = validate_value("debug_mode", "maybe", {"type": "bool"})
        assert valid is False
        assert "boolean" in error

    def test_int_bounds(self):
        schema = {"type": "int", "min": 1, "max": 10}
        assert validate_value("n", "5", schema) == (True, 5, None)
        assert validate_value("n", 0, schema)[2] == "Value must be at least 1"
        assert validate_value("n", 11, schema)[2] == "Value must be at most 10"
        assert validate_value("n", True, schema)[0] is False

    def test_string_enum_and_pattern(self):
        assert validate_value("log_level", "verbose", {"type": "string", "enum": ["info"]})[0] is False
        assert validate_value("h", "X-Key", {"type": "string", "pattern": r"^[A-Za-z-]+$"})[0] is True
        assert validate_value("h", "bad key", {"type": "string", "pattern": r"^[A-Za-z-]+$"})[0] is False

    @pytest.mark.parametrize("raw, expected", [
        (["a"], ["a"]), ('["a", "b"]', ["a", "b"]), ("10.0.0.1", ["10.0.0.1"]), ("", []), (None, []),
    ])
    def test_array_conversion(self, raw, expected):
        assert validate_value("ip_whitelist", raw, {"type": "array"})[1] == expected

    def test_json_type(self):
        assert validate_value("x", '{"a": 1}', {"type": "json"}) == (True, {"a": 1}, None)
        assert validate_value("x", "{bad", {"type": "json"})[0] is False

    def test_no_schema_accepts_anything(self):
        assert validate_value("anything", object, None)[0] is True

    @given(value=st.integers(min_value=1, max_value=1000))
    def test_int_in_range_always_valid(self, value):
        assert validate_value("max_endpoints", str(value), {"type": "int", "min": 1, "max": 1000}) == (True, value, None)


class TestSettingsStore:

    def test_defaults(self, store):
        assert store.get("max_endpoints") == DEFAULTS["max_endpoints"]
        assert store.get("unknown_key") is None
        assert store.get("unknown_key", "fallback") == "fallback"
        assert store.has("log_level") is True
        assert store.has("unknown_key") is False

    def test_set_converts_and_persists(self, context, store):
        assert store.set("max_endpoints", "25") == 25
        fresh = SettingsStore(context.session_factory)
        assert fresh.get("max_endpoints") == 25

    def test_set_invalid_raises(self, store):
        with pytest.raises(ValidationError):
            store.set("log_level", "verbose")
        assert store.get("log_level") == "info"

    def test_set_many_is_all_or_nothing(self, store):
        with pytest.raises(ValidationError) as exc:
            store.set_many({"max_endpoints": 5, "webhook_max_retries": 99})
        assert "webhook_max_retries" in exc.value.data
        assert store.get("max_endpoints") == DEFAULTS["max_endpoints"]

    def test_reset_selected_and_all(self, store):
        store.set_many({"max_endpoints": 5, "debug_mode": True})
        store.reset(["max_endpoints"])
        assert store.get("max_endpoints") == DEFAULTS["max_endpoints"]
        assert store.get("debug_mode") is True

        store.reset()
        assert store.get_all(include_defaults=False) == {}

    def test_export_contains_only_stored_values(self, store):
        store.set("max_endpoints", 7)
        assert json.loads(store.export()) == {"max_endpoints": 7}

    def test_import_merge_and_replace(self, store):
        store.set("debug_mode", True)
        store.import_settings(json.dumps({"max_endpoints": 9}), merge=True)
        assert store.get_all(include_defaults=False) == {"debug_mode": True, "max_endpoints": 9}

        store.import_settings(json.dumps({"log_level": "error"}), merge=False)
        assert store.get_all(include_defaults=False) == {"log_level": "error"}

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]"])
    def test_import_rejects_invalid_payload(self, store, payload):
        with pytest.raises(ValidationError):
            store.import_settings(payload)

    def test_register_extension_setting(self, store):
        store.register("crm_sync_batch", 50, {"type": "int", "min": 1, "max": 500})
        assert store.get("crm_sync_batch") == 50
        assert store.get_default("crm_sync_batch") == 50
        with pytest.raises(ValidationError):
            store.set("crm_sync_batch", 1000)

    def test_grouped_covers_groups(self, store):
        grouped = store.get_grouped()
        assert set(grouped) == set(GROUPS)
        assert grouped["system"]["maintenance_mode"] is False

    def test_flags(self, context, store):
        assert store.is_enabled() is True
        assert store.is_maintenance() is False
        assert store.is_debug() is False
        store.set("maintenance_mode", "on")
        assert store.is_maintenance() is True
        assert SettingsStore(context.session_factory, debug_override=True).is_debug() is True
