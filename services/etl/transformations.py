"""
字段转换原语

每个转换由 {"type": <名称>, ...参数} 描述，字符串形式 "uppercase" 等价于 {"type": "uppercase"}。
自定义转换器按名称注册，优先于内置实现；未知名称原样返回输入值。
"""
import base64
import binascii
import hashlib
import html
import json
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import quote_plus, unquote_plus

from shared.registry import CallbackRegistry

logger = logging.getLogger(__name__)

DEFAULT_DATE_OUTPUT = "%Y-%m-%d %H:%M:%S"

Transformer = Callable[[Any, Dict[str, Any]], Any]
TransformationSpec = Union[str, Dict[str, Any]]


class TransformationType(str, Enum):
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    INT = "int"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    BOOL = "bool"
    BOOLEAN = "boolean"
    JSON_ENCODE = "json_encode"
    JSON_DECODE = "json_decode"
    DATE = "date"
    REPLACE = "replace"
    REGEX_REPLACE = "regex_replace"
    SUBSTR = "substr"
    CONCAT = "concat"
    SPLIT = "split"
    JOIN = "join"
    MAP = "map"
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    ROUND = "round"
    HASH = "hash"
    BASE64_ENCODE = "base64_encode"
    BASE64_DECODE = "base64_decode"
    URL_ENCODE = "url_encode"
    URL_DECODE = "url_decode"
    HTML_ENCODE = "html_encode"
    HTML_DECODE = "html_decode"
    STRIP_TAGS = "strip_tags"


# ---------------------------------------------------------------------------
# 辅助函数
# ---------------------------------------------------------------------------

def compile_pattern(pattern: str) -> re.Pattern:
    """
    编译正则，兼容 /expr/flags 形式的定界符写法

    Raises:
        re.error: 正则非法
    """
    match = re.match(r"^/(.*)/([imsx]*)$", pattern or "", re.DOTALL)
    if not match:
        return re.compile(pattern or "")
    expr, flag_chars = match.groups()
    flags = 0
    for ch in flag_chars:
        flags |= {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}[ch]
    return re.compile(expr, flags)


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
            return True
        except ValueError:
            return False
    return False


def to_number(value: Any) -> Union[int, float]:
    """数值或数值字符串转为 int/float，非数值返回 0"""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return 0


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


def to_int(value: Any) -> int:
    try:
        return int(float(value)) if not isinstance(value, bool) else int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_datetime(value: Any, input_format: Optional[str] = None) -> Optional[datetime]:
    """按 input_format（strftime 语法）或 ISO 8601 / Unix 时间戳解析日期"""
    if isinstance(value, datetime):
        return value
    if value is None or value == "":
        return None
    try:
        if input_format:
            return datetime.strptime(str(value), input_format)
        if is_numeric(value):
            return datetime.utcfromtimestamp(float(value))
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError):
        return None


# ---------------------------------------------------------------------------
# 内置转换
# ---------------------------------------------------------------------------

def _date(value: Any, spec: Dict[str, Any]) -> Any:
    parsed = parse_datetime(value, spec.get("input_format"))
    if parsed is None:
        return value
    output_format = spec.get("output_format") or DEFAULT_DATE_OUTPUT
    if output_format == "timestamp":
        return int(parsed.timestamp())
    return parsed.strftime(output_format)


def _replace(value: Any, spec: Dict[str, Any]) -> str:
    text = to_text(value)
    search = spec.get("search") or ""
    if not search:
        return text
    return text.replace(str(search), to_text(spec.get("replace")))


def _regex_replace(value: Any, spec: Dict[str, Any]) -> Any:
    try:
        pattern = compile_pattern(spec.get("pattern") or "")
    except re.error as e:
        logger.warning("Invalid regex_replace pattern | pattern=%s | error=%s", spec.get("pattern"), e)
        return value
    return pattern.sub(to_text(spec.get("replacement")), to_text(value))


def _substr(value: Any, spec: Dict[str, Any]) -> str:
    text = to_text(value)
    start = to_int(spec.get("start", 0))
    part = text[start:]
    length = spec.get("length")
    if length is not None:
        part = part[:to_int(length)]
    return part


def _split(value: Any, spec: Dict[str, Any]) -> list:
    delimiter = spec.get("delimiter") or ","
    return to_text(value).split(delimiter)


def _join(value: Any, spec: Dict[str, Any]) -> Any:
    if not isinstance(value, list):
        return value
    return (spec.get("delimiter") or ",").join(to_text(item) for item in value)


def _map(value: Any, spec: Dict[str, Any]) -> Any:
    values = spec.get("values") or {}
    key = to_text(value)
    if key in values:
        return values[key]
    return spec.get("default", value)


def _multiply(value: Any, spec: Dict[str, Any]) -> Any:
    if not is_numeric(value):
        return value
    return to_number(value) * to_number(spec.get("factor", 1))


def _divide(value: Any, spec: Dict[str, Any]) -> Any:
    divisor = to_number(spec.get("divisor", 1))
    if not is_numeric(value) or divisor == 0:
        return value
    return to_number(value) / divisor


def _round(value: Any, spec: Dict[str, Any]) -> Any:
    if not is_numeric(value):
        return value
    return round(float(to_number(value)), to_int(spec.get("precision", 0)))


def _hash(value: Any, spec: Dict[str, Any]) -> Any:
    algorithm = (spec.get("algorithm") or "sha256").lower()
    try:
        digest = hashlib.new(algorithm)
    except ValueError:
        logger.warning("Unsupported hash algorithm | algorithm=%s", algorithm)
        return value
    digest.update(to_text(value).encode("utf-8"))
    return digest.hexdigest()


def _base64_decode(value: Any, spec: Dict[str, Any]) -> Any:
    try:
        return base64.b64decode(to_text(value), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return value


def _json_decode(value: Any, spec: Dict[str, Any]) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return None


BUILTIN_TRANSFORMERS: Dict[TransformationType, Transformer] = {
    TransformationType.UPPERCASE: lambda v, s: v.upper() if isinstance(v, str) else v,
    TransformationType.LOWERCASE: lambda v, s: v.lower() if isinstance(v, str) else v,
    TransformationType.TRIM: lambda v, s: v.strip() if isinstance(v, str) else v,
    TransformationType.INT: lambda v, s: to_int(v),
    TransformationType.INTEGER: lambda v, s: to_int(v),
    TransformationType.FLOAT: lambda v, s: to_float(v),
    TransformationType.STRING: lambda v, s: to_text(v),
    TransformationType.BOOL: lambda v, s: to_bool(v),
    TransformationType.BOOLEAN: lambda v, s: to_bool(v),
    TransformationType.JSON_ENCODE: lambda v, s: json.dumps(v, ensure_ascii=False, default=str),
    TransformationType.JSON_DECODE: _json_decode,
    TransformationType.DATE: _date,
    TransformationType.REPLACE: _replace,
    TransformationType.REGEX_REPLACE: _regex_replace,
    TransformationType.SUBSTR: _substr,
    TransformationType.CONCAT: lambda v, s: f"{to_text(s.get('prefix'))}{to_text(v)}{to_text(s.get('suffix'))}",
    TransformationType.SPLIT: _split,
    TransformationType.JOIN: _join,
    TransformationType.MAP: _map,
    TransformationType.MULTIPLY: _multiply,
    TransformationType.DIVIDE: _divide,
    TransformationType.ROUND: _round,
    TransformationType.HASH: _hash,
    TransformationType.BASE64_ENCODE: lambda v, s: base64.b64encode(to_text(v).encode("utf-8")).decode("ascii"),
    TransformationType.BASE64_DECODE: _base64_decode,
    TransformationType.URL_ENCODE: lambda v, s: quote_plus(to_text(v)),
    TransformationType.URL_DECODE: lambda v, s: unquote_plus(to_text(v)),
    TransformationType.HTML_ENCODE: lambda v, s: html.escape(to_text(v), quote=True),
    TransformationType.HTML_DECODE: lambda v, s: html.unescape(to_text(v)),
    TransformationType.STRIP_TAGS: lambda v, s: re.sub(r"<[^>]*>", "", to_text(v)),
}


class TransformationLibrary:
    """
    转换执行器

    Args:
        custom: 自定义转换器注册表，键为转换名称
    """

    def __init__(self, custom: Optional[CallbackRegistry] = None):
        self.custom: CallbackRegistry = custom if custom is not None else CallbackRegistry("Transformer")

    def apply(self, value: Any, transformation: TransformationSpec) -> Any:
        """
        执行单个转换。

        Args:
            value: 输入值
            transformation: 转换名称或 {"type": ..., 参数...}

        Returns:
            转换后的值；未知类型原样返回
        """
        spec = {"type": transformation} if isinstance(transformation, str) else dict(transformation or {})
        name = spec.get("type") or ""

        if self.custom.has(name):
            return self.custom.get(name)(value, spec)

        try:
            kind = TransformationType(name)
        except ValueError:
            logger.debug("Unknown transformation passed through | type=%s", name)
            return value
        return BUILTIN_TRANSFORMERS[kind](value, spec)

    def apply_all(self, value: Any, mapping: Dict[str, Any]) -> Any:
        """
        依次执行 mapping["transformations"]，结果为 None 或空串时使用 mapping["default"]。
        """
        for transformation in mapping.get("transformations") or []:
            value = self.apply(value, transformation)
        if (value is None or value == "") and "default" in mapping:
            value = mapping["default"]
        return value
