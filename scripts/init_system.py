"""
系统初始化脚本

功能：
1. 创建数据库表
2. 写入运行期配置默认值（已存在的键不覆盖）
3. 创建内置系统定时任务
"""
import sys
import os
import logging

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.context import AppContext, build_context
from shared.database import Base
from shared.models import *  # noqa: F401,F403
from shared.utils.event_logger import CATEGORY_SYSTEM


def seed_settings(context: AppContext) -> int:
    """
    写入配置默认值

    Returns:
        新写入的键数量
    """
    store = context.settings_store
    stored = store.get_all(include_defaults=False)
    missing = {key: value for key, value in store.defaults.items() if key not in stored}
    if missing:
        store.set_many(missing)
    print(f"✅ 配置默认值写入完成（新建 {len(missing)} 个，已存在 {len(stored)} 个）")
    return len(missing)


def init_system():
    """执行系统初始化"""
    print("=" * 60)
    print("开始初始化动态端点平台...")
    print("=" * 60)

    context = build_context()
    try:
        print("\n[1/3] 创建数据库表...")
        Base.metadata.create_all(bind=context.engine)

        print("\n[2/3] 写入配置默认值...")
        seed_settings(context)

        print("\n[3/3] 创建内置定时任务...")
        created = context.scheduler.ensure_builtin_tasks()
        print(f"✅ 内置定时任务创建完成（新建 {created} 个）")

        context.event_logger.info(CATEGORY_SYSTEM, "System initialized", {"builtin_tasks_created": created})

        print("\n" + "=" * 60)
        print("✅ 系统初始化完成！")
        print("=" * 60)
    except Exception as e:
        print(f"\n❌ 系统初始化失败: {str(e)}")
        raise
    finally:
        context.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_system()
