"""
平台错误类型

所有业务错误都继承 PlatformError，携带 HTTP 状态码与机器可读的 error_code，
由 services/endpoint/error_handler.py 统一转换为
{"error_code", "message", "request_id"} 响应体。
"""
from typing import Any, Optional


class PlatformError(Exception):
    """平台错误基类"""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "", status_code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.data = data

    def to_dict(self) -> dict:
        return {"error_code": self.error_code, "message": self.message}


class ValidationError(PlatformError):
    """缺少必填字段或字段格式错误"""

    status_code = 400
    error_code = "validation_error"


class PermissionDenied(PlatformError):
    """
    权限校验失败

    401 表示未提供凭证，403 表示凭证被拒绝；不透露具体原因。
    """

    status_code = 403
    error_code = "permission_denied"

    def __init__(self, message: str = "Access denied", status_code: int = 403, data: Any = None):
        super().__init__(message, status_code=status_code, data=data)
        if status_code == 401:
            self.error_code = "unauthorized"


class NotFound(PlatformError):
    """未知的 id / slug / 注册键"""

    status_code = 404
    error_code = "not_found"


class HandlerFailure(PlatformError):
    """处理策略内部未捕获的异常"""

    status_code = 500
    error_code = "handler_failure"


class PipelineStageFailure(PlatformError):
    """ETL 某阶段失败，stage ∈ extract/transform/load"""

    status_code = 500
    error_code = "pipeline_stage_failure"

    def __init__(self, stage: str, message: str, data: Any = None):
        super().__init__(message, data=data)
        self.stage = stage

    def to_dict(self) -> dict:
        return {"error_code": self.error_code, "message": self.message, "stage": self.stage}


class TransportFailure(PlatformError):
    """外部服务不可达（无 HTTP 响应，code=0）"""

    status_code = 503
    error_code = "transport_failure"
    code = 0


class RateLimited(PlatformError):
    """外部服务调用超出滑动窗口限制"""

    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 0):
        super().__init__(message)
        self.retry_after = retry_after

