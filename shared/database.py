"""
数据库连接管理
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session


def create_db_engine(database_url: str):
    """
    按 URL 创建 SQLAlchemy 引擎。

    SQLite 需要关闭同线程检查，自定义端点请求在线程池中执行。
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, pool_pre_ping=True)


def create_session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


Base = declarative_base()


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    事务作用域：成功提交，异常回滚，最后关闭会话。

    Args:
        session_factory: sessionmaker 实例（AppContext.session_factory）
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
