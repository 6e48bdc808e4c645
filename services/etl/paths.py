"""
嵌套数据路径工具

  get_nested(data, "a.b[0].c")   点号路径 + 方括号数组下标，缺失返回 None
  flatten(data, "_")              只展开非空的字典值，列表保持原样
  unflatten(data, "_")            flatten 的逆操作
"""
import re
from typing import Any, Dict, List, Optional

_SEGMENT_PATTERN = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")


def _parse_path(path: str) -> Optional[List[Any]]:
    """把 a.b[0].c 拆为 ["a", "b", 0, "c"]，语法非法返回 None"""
    steps: List[Any] = []
    for segment in path.split("."):
        match = _SEGMENT_PATTERN.match(segment)
        if match is None:
            return None
        key, indexes = match.groups()
        if key:
            steps.append(key)
        steps.extend(int(i) for i in _INDEX_PATTERN.findall(indexes))
    return steps


def get_nested(data: Any, path: str) -> Any:
    """
    按点号路径读取嵌套值。

    Args:
        data: 嵌套的 dict / list
        path: 如 "user.profile.name"、"items[0].sku"、"items.0.sku"

    Returns:
        对应值；任一段缺失返回 None，不抛异常
    """
    if path is None or path == "":
        return None
    steps = _parse_path(str(path))
    if steps is None:
        return None

    current = data
    for step in steps:
        if isinstance(step, int):
            if not isinstance(current, list) or step >= len(current):
                return None
            current = current[step]
        elif isinstance(current, dict):
            if step not in current:
                return None
            current = current[step]
        elif isinstance(current, list) and step.isdigit():
            index = int(step)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def flatten(data: Dict[str, Any], separator: str = "_", prefix: str = "") -> Dict[str, Any]:
    """
    展开嵌套字典。

    只有非空字典会被递归展开；列表、空字典、标量作为叶子值保留。

    Args:
        data: 嵌套字典
        separator: 键分隔符
        prefix: 递归时的键前缀

    Returns:
        单层字典
    """
    result: Dict[str, Any] = {}
    for key, value in data.items():
        new_key = f"{prefix}{separator}{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            result.update(flatten(value, separator, new_key))
        else:
            result[new_key] = value
    return result


def unflatten(data: Dict[str, Any], separator: str = "_") -> Dict[str, Any]:
    """
    把 flatten 的结果还原为嵌套字典。

    Args:
        data: 单层字典
        separator: 键分隔符

    Returns:
        嵌套字典
    """
    result: Dict[str, Any] = {}
    for key, value in data.items():
        parts = str(key).split(separator) if separator else [str(key)]
        current = result
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value
    return result
