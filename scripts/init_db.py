"""
初始化数据库脚本

开发环境直接按模型建表；生产环境使用 alembic/versions 中的迁移。
"""
import sys
import os

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from typing import Optional

from shared.config import settings
from shared.database import Base, create_db_engine
from shared.models import *  # noqa: F401,F403


def init_database(database_url: Optional[str] = None) -> int:
    """
    初始化数据库

    Args:
        database_url: 默认使用 settings.DATABASE_URL

    Returns:
        模型表数量
    """
    engine = create_db_engine(database_url or settings.DATABASE_URL)
    try:
        print("正在创建数据库表...")
        Base.metadata.create_all(bind=engine)
        print(f"✅ 数据库表创建成功！共 {len(Base.metadata.tables)} 张表")
    finally:
        engine.dispose()
    return len(Base.metadata.tables)


if __name__ == "__main__":
    init_database()
