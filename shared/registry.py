"""
类型化回调注册表

script 处理策略、自定义转换器、自定义定时任务处理器都通过稳定的字符串键注册，
在首次分发前（应用启动时）填充。查找不存在的键抛出 NotFound，而不是返回 None。
"""
from typing import Callable, Dict, Generic, List, TypeVar

from shared.errors import NotFound

T = TypeVar("T", bound=Callable)


class CallbackRegistry(Generic[T]):
    """字符串键 → 可调用对象"""

    def __init__(self, kind: str):
        self.kind = kind
        self._entries: Dict[str, T] = {}

    def register(self, key: str, fn: T) -> T:
        if not key:
            raise ValueError(f"{self.kind} key must not be empty")
        if not callable(fn):
            raise TypeError(f"{self.kind} '{key}' is not callable")
        self._entries[key] = fn
        return fn

    def decorator(self, key: str) -> Callable[[T], T]:
        """
        装饰器形式注册::

            @context.callbacks.decorator("sync_order")
            def sync_order(data, definition, request): ...
        """
        def wrap(fn: T) -> T:
            return self.register(key, fn)
        return wrap

    def unregister(self, key: str) -> None:
        self._entries.pop(key, None)

    def get(self, key: str) -> T:
        try:
            return self._entries[key]
        except KeyError:
            raise NotFound(f"{self.kind} not registered: {key}") from None

    def has(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
