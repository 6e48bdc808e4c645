"""
测试系统初始化脚本

- 配置默认值写入，已存在的键不覆盖
- 内置系统任务幂等创建
- 建表脚本按传入的数据库 URL 创建引擎
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import inspect

import shared.database
from scripts.init_db import init_database
from scripts.init_system import seed_settings
from shared.database import create_db_engine


def test_seed_settings_writes_defaults(context):
    created = seed_settings(context)

    assert created == len(context.settings_store.defaults)
    stored = context.settings_store.get_all(include_defaults=False)
    assert stored["log_level"] == "info"


def test_seed_settings_keeps_existing_values(context):
    context.settings_store.set("log_level", "error")

    created = seed_settings(context)

    assert created == len(context.settings_store.defaults) - 1
    assert context.settings_store.get("log_level") == "error"
    assert seed_settings(context) == 0


def test_builtin_tasks_created_once(context):
    first = context.scheduler.ensure_builtin_tasks()

    assert first > 0
    assert context.scheduler.ensure_builtin_tasks() == 0
    tasks = context.scheduler.list_tasks()
    assert all(task["is_system"] for task in tasks)


def test_init_database_uses_given_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'fresh.db'}"

    count = init_database(url)

    engine = create_db_engine(url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert count == len(tables)
    assert {"custom_endpoints", "scheduled_tasks", "event_logs"} <= tables


def test_database_module_has_no_global_engine():
    assert not hasattr(shared.database, "engine")
    assert not hasattr(shared.database, "SessionLocal")
