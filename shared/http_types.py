"""
与 Web 框架无关的请求/响应载体

自定义端点的分发逻辑在线程池中同步执行，入口处先把 starlette Request
读取成 InboundRequest（含完整请求体），之后各处理策略只依赖这里的类型。
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from shared.utils.security import get_client_ip


@dataclass
class InboundRequest:
    """入站请求快照"""

    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    client_host: Optional[str] = None
    path_params: Dict[str, str] = field(default_factory=dict)
    form: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.method = self.method.upper()
        # 请求头统一小写存储，查找大小写不敏感
        self.headers = {k.lower(): v for k, v in (self.headers or {}).items()}

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    @property
    def content_type(self) -> str:
        return (self.header("content-type") or "").split(";")[0].strip().lower()

    @property
    def client_ip(self) -> Optional[str]:
        return get_client_ip(self.headers, self.client_host)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """解析 JSON 请求体，非法 JSON 返回 None"""
        if not self.body:
            return None
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError):
            return None

    def form_data(self) -> Dict[str, Any]:
        """表单请求体（urlencoded 直接解析，multipart 由入口预先填充 form）"""
        if self.form:
            return dict(self.form)
        if self.content_type == "application/x-www-form-urlencoded":
            return dict(parse_qsl(self.text, keep_blank_values=True))
        return {}

    def merged_data(self) -> Dict[str, Any]:
        """
        合并请求数据：路由参数 → 查询参数 → JSON 对象体 → 表单体，后者覆盖前者。
        """
        data: Dict[str, Any] = dict(self.path_params)
        data.update(self.query_params)
        body = self.json()
        if isinstance(body, dict):
            data.update(body)
        data.update(self.form_data())
        return data


@dataclass
class HandlerResponse:
    """处理策略的统一返回"""

    status_code: int = 200
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def to_dict(self) -> Dict[str, Any]:
        return {"status_code": self.status_code, "body": self.body, "headers": dict(self.headers)}
