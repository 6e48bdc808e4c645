"""
通用关系型持久化接口

面向任意表名的建表、增删改查，供 ETL 的 database 目标和定时任务的
source_query 使用。所有操作返回统一的 ResultEnvelope，不向调用方抛出数据库异常。
表名与列名只允许 [A-Za-z_][A-Za-z0-9_]*。
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, Float, Integer, MetaData, String, Table, Text, JSON,
    inspect, select, text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# create_table 支持的列类型
COLUMN_TYPES = {
    "string": lambda: String(255),
    "text": Text,
    "integer": Integer,
    "int": Integer,
    "float": Float,
    "boolean": Boolean,
    "bool": Boolean,
    "datetime": DateTime,
    "json": JSON,
}


@dataclass
class ResultEnvelope:
    """统一结果信封"""

    ok: bool
    status_code: int = 200
    message: str = ""
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status_code": self.status_code,
            "message": self.message,
            "data": self.data,
        }


def _valid_identifier(name: str) -> bool:
    return bool(name) and bool(IDENTIFIER_PATTERN.match(name))


class Database:
    """
    基于 SQLAlchemy Core 反射的通用表访问。

    Args:
        engine: SQLAlchemy 引擎
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._tables: Dict[str, Table] = {}

    def _table(self, name: str) -> Table:
        if name not in self._tables:
            self._tables[name] = Table(name, MetaData(), autoload_with=self.engine)
        return self._tables[name]

    def _reject(self, name: str) -> ResultEnvelope:
        return ResultEnvelope(ok=False, status_code=400, message=f"Invalid identifier: {name}")

    def table_exists(self, name: str) -> bool:
        if not _valid_identifier(name):
            return False
        return inspect(self.engine).has_table(name)

    def create_table(self, name: str, schema: Dict[str, str]) -> ResultEnvelope:
        """
        创建表，自动追加整型自增主键 id。

        Args:
            name: 表名
            schema: 列名 → 类型名（string/text/integer/float/boolean/datetime/json）
        """
        if not _valid_identifier(name):
            return self._reject(name)
        if self.table_exists(name):
            return ResultEnvelope(ok=True, status_code=200, message="Table already exists")

        columns = [Column("id", Integer, primary_key=True, autoincrement=True)]
        for column_name, type_name in (schema or {}).items():
            if column_name == "id":
                continue
            if not _valid_identifier(column_name):
                return self._reject(column_name)
            factory = COLUMN_TYPES.get(str(type_name).lower())
            if factory is None:
                return ResultEnvelope(ok=False, status_code=400, message=f"Unsupported column type: {type_name}")
            columns.append(Column(column_name, factory()))

        try:
            table = Table(name, MetaData(), *columns)
            table.create(self.engine)
        except SQLAlchemyError as e:
            logger.error("Create table failed | table=%s | error=%s", name, e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))
        self._tables.pop(name, None)
        return ResultEnvelope(ok=True, status_code=201, message="Table created")

    def insert_row(self, table_name: str, fields: Dict[str, Any]) -> ResultEnvelope:
        if not _valid_identifier(table_name):
            return self._reject(table_name)
        try:
            table = self._table(table_name)
            values = {k: v for k, v in fields.items() if k in table.c}
            with self.engine.begin() as conn:
                result = conn.execute(table.insert().values(**values))
                pk = result.inserted_primary_key
            row_id = pk[0] if pk else None
            return ResultEnvelope(ok=True, status_code=201, message="Row inserted", data={"id": row_id})
        except NoSuchTableError:
            return ResultEnvelope(ok=False, status_code=404, message=f"Table not found: {table_name}")
        except SQLAlchemyError as e:
            logger.error("Insert failed | table=%s | error=%s", table_name, e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))

    def update_row(self, table_name: str, row_id: Any, fields: Dict[str, Any]) -> ResultEnvelope:
        if not _valid_identifier(table_name):
            return self._reject(table_name)
        try:
            table = self._table(table_name)
            values = {k: v for k, v in fields.items() if k in table.c and k != "id"}
            with self.engine.begin() as conn:
                result = conn.execute(
                    table.update().where(table.c.id == row_id).values(**values)
                )
            if result.rowcount == 0:
                return ResultEnvelope(ok=False, status_code=404, message="Row not found", data={"id": row_id})
            return ResultEnvelope(ok=True, status_code=200, message="Row updated", data={"id": row_id, "affected": result.rowcount})
        except NoSuchTableError:
            return ResultEnvelope(ok=False, status_code=404, message=f"Table not found: {table_name}")
        except SQLAlchemyError as e:
            logger.error("Update failed | table=%s | id=%s | error=%s", table_name, row_id, e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))

    def delete_row(self, table_name: str, row_id: Any) -> ResultEnvelope:
        if not _valid_identifier(table_name):
            return self._reject(table_name)
        try:
            table = self._table(table_name)
            with self.engine.begin() as conn:
                result = conn.execute(table.delete().where(table.c.id == row_id))
            if result.rowcount == 0:
                return ResultEnvelope(ok=False, status_code=404, message="Row not found", data={"id": row_id})
            return ResultEnvelope(ok=True, status_code=200, message="Row deleted", data={"id": row_id})
        except NoSuchTableError:
            return ResultEnvelope(ok=False, status_code=404, message=f"Table not found: {table_name}")
        except SQLAlchemyError as e:
            logger.error("Delete failed | table=%s | id=%s | error=%s", table_name, row_id, e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))

    def get_rows_data(
        self,
        table_name: str,
        column: Optional[str] = None,
        value: Any = None,
        multiple: bool = True,
    ) -> ResultEnvelope:
        """
        按列值查询。column 为空时返回整表。

        Args:
            multiple: False 时只返回第一行（字典），否则返回行列表
        """
        if not _valid_identifier(table_name):
            return self._reject(table_name)
        if column is not None and not _valid_identifier(column):
            return self._reject(column)
        try:
            table = self._table(table_name)
            stmt = select(table)
            if column is not None:
                if column not in table.c:
                    return ResultEnvelope(ok=False, status_code=400, message=f"Unknown column: {column}")
                stmt = stmt.where(table.c[column] == value)
            with self.engine.connect() as conn:
                rows = [dict(row._mapping) for row in conn.execute(stmt)]
        except NoSuchTableError:
            return ResultEnvelope(ok=False, status_code=404, message=f"Table not found: {table_name}")
        except SQLAlchemyError as e:
            logger.error("Query failed | table=%s | error=%s", table_name, e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))

        if multiple:
            return ResultEnvelope(ok=True, data=rows)
        if not rows:
            return ResultEnvelope(ok=False, status_code=404, message="Row not found")
        return ResultEnvelope(ok=True, data=rows[0])

    def execute_query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> ResultEnvelope:
        """执行参数化查询，返回行字典列表（仅 SELECT 返回数据）"""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(sql), params or {})
                rows = [dict(row._mapping) for row in result] if result.returns_rows else []
            return ResultEnvelope(ok=True, data=rows)
        except SQLAlchemyError as e:
            logger.error("Query failed | sql=%s | error=%s", sql[:200], e)
            return ResultEnvelope(ok=False, status_code=500, message=str(e))
