"""
ETL 抽取与转换阶段

抽取（extract_config）:
  paths     {目标键: 点号路径}，缺失路径跳过
  root      点号路径，解析出的字典合并进结果
  filters   [{field, operator, value}]，任一不满足则结果为空字典

转换（field_mappings + transform_config）:
  field_mappings    {目标字段: 源路径 | {source, transformations, default}}
  transformations   整条记录的全局转换列表
  static_fields     合并的静态字段
  computed_fields   {字段: 表达式}，表达式为 {type: concat|sum|avg|count|now|uuid, ...} 或 "{{field}}" 模板
"""
import json
import logging
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from services.etl.paths import flatten, get_nested, unflatten
from services.etl.transformations import (
    DEFAULT_DATE_OUTPUT,
    TransformationLibrary,
    compile_pattern,
    is_numeric,
    to_number,
    to_text,
)

logger = logging.getLogger(__name__)

_TEMPLATE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GT = "gt"
    GREATER_THAN = "greater_than"
    GTE = "gte"
    LT = "lt"
    LESS_THAN = "less_than"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    REGEX = "regex"
    EMPTY = "empty"
    NOT_EMPTY = "not_empty"


class GlobalTransform(str, Enum):
    FLATTEN = "flatten"
    UNFLATTEN = "unflatten"
    FILTER_EMPTY = "filter_empty"
    FILTER_NULL = "filter_null"
    SORT = "sort"
    RENAME_KEYS = "rename_keys"
    REMOVE_KEYS = "remove_keys"
    KEEP_KEYS = "keep_keys"


class ComputedType(str, Enum):
    CONCAT = "concat"
    SUM = "sum"
    AVG = "avg"
    COUNT = "count"
    NOW = "now"
    UUID = "uuid"


def is_empty(value: Any) -> bool:
    """None、空串、"0"、0、False、空列表、空字典视为空"""
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    if isinstance(value, str):
        return value == "" or value == "0"
    if isinstance(value, (list, dict, tuple)):
        return len(value) == 0
    return False


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, str):
        return to_text(needle) in haystack
    if isinstance(haystack, list):
        return needle in haystack
    return False


def _compare(field_value: Any, value: Any, op: Callable[[Any, Any], bool]) -> bool:
    if not is_numeric(field_value) or not is_numeric(value):
        return False
    return op(to_number(field_value), to_number(value))


def _regex(field_value: Any, pattern: Any) -> bool:
    if not isinstance(field_value, str) or not pattern:
        return False
    try:
        return compile_pattern(str(pattern)).search(field_value) is not None
    except re.error:
        logger.warning("Invalid filter regex | pattern=%s", pattern)
        return False


FILTER_OPERATIONS: Dict[FilterOperator, Callable[[Any, Any], bool]] = {
    FilterOperator.EQUALS: lambda f, v: f == v,
    FilterOperator.NOT_EQUALS: lambda f, v: f != v,
    FilterOperator.CONTAINS: _contains,
    FilterOperator.NOT_CONTAINS: lambda f, v: isinstance(f, (str, list)) and not _contains(f, v),
    FilterOperator.GT: lambda f, v: _compare(f, v, lambda a, b: a > b),
    FilterOperator.GREATER_THAN: lambda f, v: _compare(f, v, lambda a, b: a > b),
    FilterOperator.GTE: lambda f, v: _compare(f, v, lambda a, b: a >= b),
    FilterOperator.LT: lambda f, v: _compare(f, v, lambda a, b: a < b),
    FilterOperator.LESS_THAN: lambda f, v: _compare(f, v, lambda a, b: a < b),
    FilterOperator.LTE: lambda f, v: _compare(f, v, lambda a, b: a <= b),
    FilterOperator.IN: lambda f, v: isinstance(v, list) and f in v,
    FilterOperator.NOT_IN: lambda f, v: isinstance(v, list) and f not in v,
    FilterOperator.REGEX: _regex,
    FilterOperator.EMPTY: lambda f, v: is_empty(f),
    FilterOperator.NOT_EMPTY: lambda f, v: not is_empty(f),
}


def matches_filter(data: Any, rule: Dict[str, Any]) -> bool:
    """单条过滤规则；未知运算符视为通过"""
    field_value = get_nested(data, rule.get("field") or "")
    try:
        operator = FilterOperator(rule.get("operator") or FilterOperator.EQUALS.value)
    except ValueError:
        logger.debug("Unknown filter operator treated as match | operator=%s", rule.get("operator"))
        return True
    return bool(FILTER_OPERATIONS[operator](field_value, rule.get("value")))


def apply_filters(data: Any, filters: List[Dict[str, Any]]) -> Any:
    """任一规则不满足返回空字典"""
    for rule in filters:
        if not matches_filter(data, rule):
            return {}
    return data


def _sort_key(value: Any):
    if is_numeric(value):
        return (0, to_number(value), "")
    if isinstance(value, str):
        return (1, 0, value)
    return (2, 0, json.dumps(value, sort_keys=True, default=str))


def apply_global_transform(data: Dict[str, Any], transformation: Dict[str, Any]) -> Dict[str, Any]:
    """整条记录级转换；未知类型原样返回"""
    if isinstance(transformation, str):
        transformation = {"type": transformation}
    try:
        kind = GlobalTransform(transformation.get("type") or "")
    except ValueError:
        logger.debug("Unknown global transformation passed through | type=%s", transformation.get("type"))
        return data

    separator = transformation.get("separator") or "_"
    keys = transformation.get("keys") or []

    if kind is GlobalTransform.FLATTEN:
        return flatten(data, separator)
    if kind is GlobalTransform.UNFLATTEN:
        return unflatten(data, separator)
    if kind is GlobalTransform.FILTER_EMPTY:
        return {k: v for k, v in data.items() if not is_empty(v)}
    if kind is GlobalTransform.FILTER_NULL:
        return {k: v for k, v in data.items() if v is not None}
    if kind is GlobalTransform.SORT:
        reverse = transformation.get("direction") == "desc"
        return dict(sorted(data.items(), key=lambda item: _sort_key(item[1]), reverse=reverse))
    if kind is GlobalTransform.RENAME_KEYS:
        mappings = transformation.get("mappings") or {}
        return {mappings.get(k, k): v for k, v in data.items()}
    if kind is GlobalTransform.REMOVE_KEYS:
        return {k: v for k, v in data.items() if k not in keys}
    # KEEP_KEYS
    return {k: v for k, v in data.items() if k in keys}


def compute_field(expression: Any, data: Dict[str, Any]) -> Any:
    """
    计算字段值。

    Args:
        expression: {"type": ..., "fields": [...], "separator"/"format": ...} 或 "{{field}}" 模板字符串
        data: 已转换的记录

    Returns:
        计算结果；未知类型返回 None
    """
    if isinstance(expression, dict):
        fields = expression.get("fields") or []
        try:
            kind = ComputedType(expression.get("type") or ComputedType.CONCAT.value)
        except ValueError:
            return None
        if kind is ComputedType.CONCAT:
            return (expression.get("separator") or "").join(to_text(data.get(f, "")) for f in fields)
        if kind is ComputedType.SUM:
            return sum(float(to_number(data.get(f, 0))) for f in fields)
        if kind is ComputedType.AVG:
            if not fields:
                return 0
            return sum(float(to_number(data.get(f, 0))) for f in fields) / len(fields)
        if kind is ComputedType.COUNT:
            return len(fields)
        if kind is ComputedType.NOW:
            return datetime.utcnow().strftime(expression.get("format") or DEFAULT_DATE_OUTPUT)
        return str(uuid.uuid4())

    return _TEMPLATE_PATTERN.sub(lambda m: to_text(data.get(m.group(1), "")), to_text(expression))


class Extractor:
    """抽取阶段"""

    def __init__(self, bus):
        self.bus = bus

    def run(self, input_data: Any, template: Dict[str, Any]) -> Any:
        config = template.get("extract_config") or {}
        if not config:
            return input_data

        extracted: Dict[str, Any] = {}
        for key, path in (config.get("paths") or {}).items():
            value = get_nested(input_data, path)
            if value is not None:
                extracted[key] = value

        if config.get("root"):
            root = get_nested(input_data, config["root"])
            if isinstance(root, dict):
                extracted.update(root)

        if config.get("filters"):
            extracted = apply_filters(extracted, config["filters"])

        return self.bus.apply_filters("etl_extract", extracted, input_data, template)


class Transformer:
    """转换阶段"""

    def __init__(self, bus, library: TransformationLibrary):
        self.bus = bus
        self.library = library

    @staticmethod
    def field_mappings(template: Dict[str, Any]) -> Dict[str, Any]:
        mappings = template.get("field_mappings")
        if mappings:
            return mappings
        return (template.get("transform_config") or {}).get("field_mappings") or {}

    def run(self, data: Any, template: Dict[str, Any]) -> Any:
        config = template.get("transform_config") or {}
        mappings = self.field_mappings(template)

        if mappings:
            transformed: Any = {}
            for target, mapping in mappings.items():
                if isinstance(mapping, str):
                    transformed[target] = get_nested(data, mapping)
                elif isinstance(mapping, dict):
                    value = get_nested(data, mapping.get("source") or target)
                    transformed[target] = self.library.apply_all(value, mapping)
        else:
            transformed = dict(data) if isinstance(data, dict) else data

        if isinstance(transformed, dict):
            for transformation in config.get("transformations") or []:
                transformed = apply_global_transform(transformed, transformation)
            transformed.update(config.get("static_fields") or {})
            for field, expression in (config.get("computed_fields") or {}).items():
                transformed[field] = compute_field(expression, transformed)

        return self.bus.apply_filters("etl_transform", transformed, data, template)
