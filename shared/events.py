"""
扩展事件总线

两类扩展点：
  - 通知（on/emit）：生命周期事件，fire-and-forget，监听器异常只记录日志不向上传播
  - 过滤器（add_filter/apply_filters）：按注册顺序依次改写一个值，用于覆盖响应

事件名:
  endpoint.created / endpoint.updated / endpoint.deleted
  webhook.received / webhook.retry
  etl.job_queued / etl.job_completed / etl.job_failed
  external.request
  task.executed
  action.<name>（action 处理策略触发的自定义事件）
"""
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Tuple

logger = logging.getLogger(__name__)

Listener = Callable[..., None]
Filter = Callable[..., Any]


class EventBus:
    """进程内事件总线，由 AppContext 构造并持有"""

    def __init__(self):
        self._listeners: Dict[str, List[Tuple[int, Listener]]] = defaultdict(list)
        self._filters: Dict[str, List[Tuple[int, Filter]]] = defaultdict(list)

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------

    def on(self, event: str, listener: Listener, priority: int = 10) -> None:
        """注册监听器，priority 小的先执行"""
        self._listeners[event].append((priority, listener))
        self._listeners[event].sort(key=lambda item: item[0])

    def off(self, event: str, listener: Listener) -> None:
        self._listeners[event] = [
            (p, fn) for p, fn in self._listeners[event] if fn is not listener
        ]

    def emit(self, event: str, *args: Any, **kwargs: Any) -> int:
        """
        触发事件。

        Returns:
            成功执行的监听器数量
        """
        delivered = 0
        for _, listener in list(self._listeners.get(event, [])):
            try:
                listener(*args, **kwargs)
                delivered += 1
            except Exception:
                logger.exception("Event listener failed | event=%s | listener=%r", event, listener)
        return delivered

    def has_listeners(self, event: str) -> bool:
        return bool(self._listeners.get(event))

    # ------------------------------------------------------------------
    # 过滤器
    # ------------------------------------------------------------------

    def add_filter(self, name: str, fn: Filter, priority: int = 10) -> None:
        """注册过滤器，fn(value, *args) 返回新值"""
        self._filters[name].append((priority, fn))
        self._filters[name].sort(key=lambda item: item[0])

    def remove_filter(self, name: str, fn: Filter) -> None:
        self._filters[name] = [(p, f) for p, f in self._filters[name] if f is not fn]

    def has_filter(self, name: str) -> bool:
        return bool(self._filters.get(name))

    def apply_filters(self, name: str, value: Any, *args: Any) -> Any:
        """依次应用过滤器，未注册时原样返回 value"""
        for _, fn in list(self._filters.get(name, [])):
            value = fn(value, *args)
        return value
