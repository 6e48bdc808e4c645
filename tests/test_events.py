"""
事件总线与回调注册表测试
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from shared.errors import NotFound
from shared.events import EventBus
from shared.registry import CallbackRegistry


class TestEventBus:

    def test_listeners_run_by_priority(self):
        bus = EventBus()
        calls = []
        bus.on("etl.job_completed", lambda job_id: calls.append(("late", job_id)), priority=20)
        bus.on("etl.job_completed", lambda job_id: calls.append(("early", job_id)), priority=5)

        assert bus.emit("etl.job_completed", "job-1") == 2
        assert calls == [("early", "job-1"), ("late", "job-1")]

    def test_listener_error_does_not_propagate(self):
        bus = EventBus()
        calls = []

        def broken(payload):
            raise RuntimeError("listener bug")

        bus.on("webhook.received", broken)
        bus.on("webhook.received", calls.append)

        assert bus.emit("webhook.received", {"id": 1}) == 1
        assert calls == [{"id": 1}]

    def test_off(self):
        bus = EventBus()
        bus.on("endpoint.deleted", print)
        bus.off("endpoint.deleted", print)
        assert bus.has_listeners("endpoint.deleted") is False

    def test_filters_chain(self):
        bus = EventBus()
        add_one = lambda value, factor: value + 1  # noqa: E731
        bus.add_filter("total", add_one)
        bus.add_filter("total", lambda value, factor: value * factor, priority=20)

        assert bus.apply_filters("total", 1, 10) == 20
        bus.remove_filter("total", add_one)
        assert bus.apply_filters("total", 1, 10) == 10
        assert bus.apply_filters("unregistered", "same") == "same"
        assert bus.has_filter("total") is True


class TestCallbackRegistry:

    def test_register_and_get(self):
        registry = CallbackRegistry("Script callback")

        @registry.decorator("sum")
        def total(data, definition, request):
            return sum(data)

        assert registry.get("sum") is total
        assert "sum" in registry
        assert registry.keys() == ["sum"]

    def test_missing_key_raises(self):
        registry = CallbackRegistry("Transformer")
        with pytest.raises(NotFound):
            registry.get("ghost")

    def test_rejects_invalid_entries(self):
        registry = CallbackRegistry("Task handler")
        with pytest.raises(ValueError):
            registry.register("", print)
        with pytest.raises(TypeError):
            registry.register("x", "not callable")

    def test_unregister(self):
        registry = CallbackRegistry("Task handler")
        registry.register("sync", print)
        registry.unregister("sync")
        assert len(registry) == 0
