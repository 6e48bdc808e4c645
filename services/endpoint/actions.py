"""
动作执行器

具名动作处理器的注册与执行，action 处理策略与 custom 定时任务共用。

处理器签名::

    def handler(data, definition, request=None): ...

- execute: 触发 executor.before_action / executor.after_action 事件并记录执行日志；
  处理器抛出的异常记录后继续向上抛出，由调用方的失败边界处理
- do_action: 未注册处理器时的事件总线通知，响应由 action_response:<name> 过滤器决定
- execute_chain: 顺序执行，dict 结果合并进后续动作的输入
- execute_parallel: 各动作使用独立输入，结果互不传递

内置处理器: log / http_request / store_data / notify_slack
"""
import logging
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from shared.errors import NotFound, ValidationError
from shared.http_types import HandlerResponse
from shared.registry import CallbackRegistry

logger = logging.getLogger(__name__)

EXECUTION_LOG_SIZE = 1000
DEFAULT_GROUP = "default"
DEFAULT_STORE_TABLE = "webhook_data"
PARALLEL_WORKERS = 4

ActionHandler = Callable[..., Any]
ActionSpec = Union[Iterable[Union[str, Tuple[str, Dict[str, Any]]]], Mapping[str, Any]]


@dataclass
class ActionOptions:
    description: str = ""
    group: str = DEFAULT_GROUP
    priority: int = 10
    accepts_request: bool = True
    returns_response: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "group": self.group,
            "priority": self.priority,
            "accepts_request": self.accepts_request,
            "returns_response": self.returns_response,
        }


def _normalize(actions: ActionSpec) -> List[Tuple[str, Optional[Dict[str, Any]]]]:
    """动作列表统一为 (name, data) 序列；映射形式为 name → data"""
    if isinstance(actions, Mapping):
        return [(name, data if isinstance(data, dict) else None) for name, data in actions.items()]
    steps = []
    for item in actions:
        if isinstance(item, str):
            steps.append((item, None))
        else:
            name, data = item
            steps.append((name, data if isinstance(data, dict) else None))
    return steps


class ActionExecutor:
    """
    动作执行器

    Args:
        context: AppContext（bus / connector / database）
    """

    def __init__(self, context):
        self.context = context
        self.handlers: CallbackRegistry[ActionHandler] = CallbackRegistry("Action handler")
        self.options: Dict[str, ActionOptions] = {}
        self.execution_log: deque = deque(maxlen=EXECUTION_LOG_SIZE)

    # ==================== 注册 ====================

    def register(self, name: str, fn: ActionHandler, **options) -> ActionHandler:
        """
        注册处理器。

        Args:
            name: 动作名
            fn: 处理器
            **options: description / group / priority / accepts_request / returns_response
        """
        self.handlers.register(name, fn)
        self.options[name] = ActionOptions(**options)
        logger.debug("Action handler registered | name=%s | group=%s", name, self.options[name].group)
        return fn

    def register_many(self, handlers: Mapping[str, Any]) -> None:
        """name → fn 或 name → (fn, options)"""
        for name, entry in handlers.items():
            if isinstance(entry, tuple):
                fn, options = entry
                self.register(name, fn, **options)
            else:
                self.register(name, entry)

    def unregister(self, name: str) -> None:
        self.handlers.unregister(name)
        self.options.pop(name, None)

    def exists(self, name: str) -> bool:
        return self.handlers.has(name)

    def get_handlers(self, group: Optional[str] = None) -> List[Dict[str, Any]]:
        """按 priority、名称排序的处理器列表"""
        entries = []
        for name in self.handlers.keys():
            options = self.options[name]
            if group is not None and options.group != group:
                continue
            entries.append({"name": name, **options.to_dict()})
        return sorted(entries, key=lambda e: (e["priority"], e["name"]))

    def get_groups(self) -> Dict[str, List[str]]:
        groups: Dict[str, List[str]] = {}
        for name in self.handlers.keys():
            groups.setdefault(self.options[name].group, []).append(name)
        return groups

    # ==================== 执行 ====================

    def execute(self, name: str, data: Dict[str, Any], definition: Optional[Dict[str, Any]] = None,
                request=None) -> Any:
        """
        执行已注册的处理器。

        Returns:
            处理器返回值；returns_response 时包装为 HandlerResponse

        Raises:
            NotFound: 处理器未注册
        """
        if not self.exists(name):
            raise NotFound(f"Handler not found: {name}")
        fn = self.handlers.get(name)
        options = self.options[name]
        definition = definition or {}
        bus = self.context.bus

        started = time.time()
        try:
            bus.emit("executor.before_action", name, data, definition)
            if options.accepts_request and request is not None:
                result = fn(data, definition, request)
            else:
                result = fn(data, definition)
            bus.emit("executor.after_action", name, result, data, definition)
        except Exception as e:
            self._record(name, started, str(e))
            logger.warning("Action handler failed | name=%s | error=%s", name, e)
            raise
        self._record(name, started, None)

        if options.returns_response and not isinstance(result, HandlerResponse):
            result = HandlerResponse(200, result if isinstance(result, dict) else {"data": result})
        return result

    def do_action(self, name: str, data: Dict[str, Any], definition: Optional[Dict[str, Any]] = None,
                  request=None) -> Any:
        """事件通知 action.<name>，返回 action_response:<name> 过滤后的响应"""
        bus = self.context.bus
        bus.emit(f"action.{name}", data, definition, request)
        return bus.apply_filters(
            f"action_response:{name}",
            {"message": "Action executed successfully"},
            data, definition, request,
        )

    def run(self, name: str, data: Dict[str, Any], definition: Optional[Dict[str, Any]] = None,
            request=None) -> Any:
        """已注册则 execute，否则 do_action"""
        if self.exists(name):
            return self.execute(name, data, definition, request)
        return self.do_action(name, data, definition, request)

    def execute_chain(self, actions: ActionSpec, shared_data: Optional[Dict[str, Any]] = None,
                      definition: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        顺序执行动作链。

        每一步的输入为当前数据与该步自带数据的合并；dict 结果合并进当前数据。

        Returns:
            动作名 → 结果
        """
        current = dict(shared_data or {})
        results: Dict[str, Any] = {}
        for name, extra in _normalize(actions):
            step_input = {**current, **extra} if extra else dict(current)
            result = self.run(name, step_input, definition)
            results[name] = result
            if isinstance(result, dict):
                current.update(result)
        return results

    def execute_parallel(self, actions: ActionSpec,
                         definition: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        并发执行互不依赖的动作，各动作只接收自带数据。

        Returns:
            动作名 → 结果（按传入顺序）
        """
        steps = _normalize(actions)
        if not steps:
            return {}
        with ThreadPoolExecutor(max_workers=min(PARALLEL_WORKERS, len(steps))) as pool:
            futures = [(name, pool.submit(self.run, name, data or {}, definition)) for name, data in steps]
            return {name: future.result() for name, future in futures}

    # ==================== 执行日志 ====================

    def _record(self, name: str, started: float, error: Optional[str]) -> None:
        self.execution_log.append({
            "handler": name,
            "time": round(time.time() - started, 4),
            "success": error is None,
            "error": error,
            "timestamp": datetime.utcnow().isoformat(),
        })

    def get_execution_log(self, limit: int = 100) -> List[Dict[str, Any]]:
        """最近的执行记录，新记录在后"""
        entries = list(self.execution_log)
        return entries[-limit:] if limit > 0 else []

    def clear_execution_log(self) -> None:
        self.execution_log.clear()

    # ==================== 内置处理器 ====================

    def register_builtin_handlers(self) -> None:
        self.register("log", _log_action, description="Log action data", group="builtin",
                      accepts_request=False)
        self.register("http_request", self._http_request, description="Send HTTP request",
                      group="builtin", accepts_request=False)
        self.register("store_data", self._store_data, description="Store data in database table",
                      group="builtin", accepts_request=False)
        self.register("notify_slack", self._notify_slack, description="Post message to Slack webhook",
                      group="builtin", accepts_request=False)

    def _http_request(self, data: Dict[str, Any], definition: Dict[str, Any]) -> Dict[str, Any]:
        """
        data: url 或 service_id（+ path）、method、headers、body、timeout
        """
        connector = self.context.connector
        method = str(data.get("method") or "POST").upper()
        body = data.get("body") if isinstance(data.get("body"), dict) else {}
        headers = data.get("headers") if isinstance(data.get("headers"), dict) else {}

        if data.get("service_id"):
            options = {"headers": headers}
            if data.get("timeout"):
                options["timeout"] = data["timeout"]
            result = connector.send(data["service_id"], data.get("path") or "", body, method, options)
        elif data.get("url"):
            result = connector.request_url(data["url"], method, body, headers, data.get("timeout"))
        else:
            return {"error": "URL is required"}
        return {"code": result.code, "body": result.body, "headers": result.headers, "error": result.error}

    def _store_data(self, data: Dict[str, Any], definition: Dict[str, Any]) -> Dict[str, Any]:
        """data._table 指定表名，默认 webhook_data"""
        database = self.context.database
        payload = dict(data)
        table = payload.pop("_table", None) or DEFAULT_STORE_TABLE

        created = database.create_table(table, {"data": "json", "endpoint_id": "string", "created_at": "datetime"})
        if not created.ok:
            return {"stored": False, "error": created.message}

        envelope = database.insert_row(table, {
            "data": payload,
            "endpoint_id": str(definition.get("id") or ""),
            "created_at": datetime.utcnow(),
        })
        if not envelope.ok:
            return {"stored": False, "error": envelope.message}
        return {"stored": True, "id": envelope.data["id"]}

    def _notify_slack(self, data: Dict[str, Any], definition: Dict[str, Any]) -> Dict[str, Any]:
        webhook_url = data.get("webhook_url")
        if not webhook_url:
            return {"error": "No webhook URL provided"}
        result = self.context.connector.request_url(webhook_url, "POST", {"text": data.get("message", "")})
        return {"sent": result.success, "error": result.error}


def _log_action(data: Dict[str, Any], definition: Dict[str, Any]) -> Dict[str, Any]:
    logger.info("Action log | endpoint_id=%s | keys=%s", definition.get("id"), sorted(data))
    return data


# ==================== 组合 ====================

def create_pipeline(executor: ActionExecutor, steps: List[Union[str, ActionHandler]]) -> ActionHandler:
    """
    组合处理器：依次执行 steps，上一步的 dict 结果作为下一步的输入。

    steps 元素为已注册动作名或可调用对象 fn(data, definition)。
    """
    if not steps:
        raise ValidationError("Pipeline requires at least one step")

    def pipeline(data, definition, request=None):
        current = data
        for step in steps:
            if isinstance(step, str):
                result = executor.run(step, current, definition, request)
            else:
                result = step(current, definition)
            if isinstance(result, dict):
                current = result
        return current

    return pipeline


def create_conditional(condition: Callable[[Dict[str, Any]], bool], if_true: ActionHandler,
                       if_false: Optional[ActionHandler] = None) -> ActionHandler:
    """按 condition(data) 选择分支；无 if_false 时原样返回 data"""

    def conditional(data, definition, request=None):
        if condition(data):
            return if_true(data, definition)
        if if_false is not None:
            return if_false(data, definition)
        return data

    return conditional
