"""
Webhook 接收器

流程（先落库后校验）:
  1. 插入 pending 状态的日志行（请求头已脱敏，原始请求体原样保存）
  2. 配置了 signature_secret 时校验 HMAC 签名并记录 signature_valid，
     require_signature 且校验失败 → 日志 failed，返回 401
  3. 按 Content-Type 解析负载（JSON / 表单 / XML，否则合并请求参数）
  4. 触发 webhook.received；配置 auto_etl_template_id 时创建并同步执行 ETL 作业，
     日志状态 queued，否则 processed
  5. 响应体经 webhook_response 过滤器后写回日志

handler_config 字段:
  signature_secret / signature_header / signature_algorithm / signature_format
  require_signature / auto_etl_template_id / success_message / echo_payload
"""
import logging
import time
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from shared.database import session_scope
from shared.errors import NotFound, ValidationError
from shared.http_types import HandlerResponse, InboundRequest
from shared.models.endpoint import CustomEndpoint
from shared.models.webhook import WebhookLog
from shared.utils.security import redact_headers, verify_signature
from shared.utils.validators import parse_uuid, require_uuid

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RECEIVED = "received"
STATUS_PROCESSED = "processed"
STATUS_QUEUED = "queued"
STATUS_FAILED = "failed"

DEFAULT_MAX_RETRIES = 3
DEFAULT_SIGNATURE_HEADER = "X-Webhook-Signature"

# 常见平台的投递标识头，按顺序取第一个存在的
SOURCE_IDENTIFIER_HEADERS = (
    "X-GitHub-Delivery",
    "X-Stripe-Webhook-Id",
    "X-Shopify-Hmac-SHA256",
    "X-Twilio-Signature",
    "X-Request-Id",
    "X-Correlation-Id",
)


class SignatureRejected(Exception):
    """require_signature 下签名校验失败"""


# ==================== 负载解析 ====================

def _element_to_value(element: ET.Element) -> Any:
    children = list(element)
    if not children and not element.attrib:
        return (element.text or "").strip()

    result: Dict[str, Any] = {}
    if element.attrib:
        result["@attributes"] = dict(element.attrib)
    for child in children:
        value = _element_to_value(child)
        if child.tag in result:
            # 同名子元素折叠为列表
            if not isinstance(result[child.tag], list):
                result[child.tag] = [result[child.tag]]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    text = (element.text or "").strip()
    if text and not children:
        result["value"] = text
    return result


def parse_xml(text: str) -> Dict[str, Any]:
    """XML 转嵌套字典（根元素的子元素作为顶层键），解析失败返回 raw + parse_error"""
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return {"raw": text, "parse_error": "Failed to parse XML"}
    value = _element_to_value(root)
    return value if isinstance(value, dict) else {"value": value}


def extract_payload(request: InboundRequest) -> Dict[str, Any]:
    content_type = request.content_type
    if "application/json" in content_type:
        body = request.json()
        return body if isinstance(body, dict) else {"raw": request.text}
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        return request.form_data()
    if "text/xml" in content_type or "application/xml" in content_type:
        return parse_xml(request.text)
    return request.merged_data()


def identify_source(request: InboundRequest) -> str:
    for header in SOURCE_IDENTIFIER_HEADERS:
        value = request.header(header)
        if value:
            return f"{header}: {value}"[:255]
    return f"User-Agent: {request.header('user-agent') or 'Unknown'}"[:255]


def validate_signature(request: InboundRequest, config: Dict[str, Any]) -> bool:
    """未配置 signature_secret 时视为通过"""
    secret = config.get("signature_secret")
    if not secret:
        return True
    return verify_signature(
        request.body,
        secret,
        request.header(config.get("signature_header") or DEFAULT_SIGNATURE_HEADER),
        config.get("signature_algorithm") or "sha256",
        config.get("signature_format") or "hex",
    )


# ==================== 接收器 ====================

class WebhookReceiver:
    """
    Webhook 接收器

    Args:
        context: AppContext（session_factory / bus / etl / settings / settings_store）
    """

    def __init__(self, context):
        self.context = context

    def _update_log(self, log_id: str, **values) -> None:
        with session_scope(self.context.session_factory) as db:
            log = db.query(WebhookLog).filter(WebhookLog.id == parse_uuid(log_id)).first()
            if log is None:
                raise NotFound(f"Webhook log not found: {log_id}")
            for key, value in values.items():
                setattr(log, key, value)

    def _create_log(self, request: InboundRequest, definition: Dict[str, Any]) -> str:
        with session_scope(self.context.session_factory) as db:
            log = WebhookLog(
                endpoint_id=require_uuid(definition["id"], "Endpoint"),
                source_ip=request.client_ip,
                source_identifier=identify_source(request),
                request_method=request.method,
                request_headers=redact_headers(request.headers),
                request_payload=request.text,
                query_params=dict(request.query_params),
                status=STATUS_PENDING,
                retry_count=0,
            )
            db.add(log)
            db.flush()
            return str(log.id)

    def receive(self, request: InboundRequest, definition: Dict[str, Any],
                config: Optional[Dict[str, Any]] = None) -> HandlerResponse:
        """
        webhook 处理策略入口。

        Args:
            request: 入站请求
            definition: 端点定义字典
            config: handler_config，缺省取 definition["handler_config"]

        Returns:
            200 {"message", "webhook_id", "timestamp", "payload"?}；签名拒绝 401；其他失败 500
        """
        config = config if config is not None else (definition.get("handler_config") or {})
        log_id = None
        try:
            log_id = self._create_log(request, definition)

            signature_valid = validate_signature(request, config)
            self._update_log(log_id, signature_valid=signature_valid)
            if not signature_valid and config.get("require_signature"):
                raise SignatureRejected("Invalid webhook signature")
            self._update_log(log_id, status=STATUS_RECEIVED)

            payload = extract_payload(request)
            self.context.bus.emit("webhook.received", payload, definition, request, log_id)
            return self._complete(log_id, payload, config)
        except SignatureRejected as e:
            self._update_log(log_id, status=STATUS_FAILED, error_message=str(e),
                             response_code=401, processed_at=datetime.utcnow())
            logger.warning("Webhook signature rejected | webhook_id=%s | endpoint_id=%s", log_id, definition.get("id"))
            return HandlerResponse(401, {"message": "Invalid webhook signature", "webhook_id": log_id})
        except Exception as e:
            logger.exception("Webhook processing failed | webhook_id=%s | endpoint_id=%s", log_id, definition.get("id"))
            if log_id:
                self._update_log(log_id, status=STATUS_FAILED, error_message=str(e),
                                 response_code=500, processed_at=datetime.utcnow())
            debug = self.context.settings.DEBUG or self.context.settings_store.is_debug()
            return HandlerResponse(500, {
                "message": str(e) if debug else "Webhook processing failed",
                "webhook_id": log_id,
            })

    def _complete(self, log_id: str, payload: Dict[str, Any], config: Dict[str, Any]) -> HandlerResponse:
        template_id = config.get("auto_etl_template_id")
        if template_id:
            self._trigger_etl(log_id, template_id, payload)
            status = STATUS_QUEUED
        else:
            status = STATUS_PROCESSED

        response = {
            "message": config.get("success_message") or "Webhook received successfully",
            "webhook_id": log_id,
            "timestamp": int(time.time()),
        }
        if config.get("echo_payload"):
            response["payload"] = payload
        response = self.context.bus.apply_filters("webhook_response", response, payload, log_id, config)

        self._update_log(
            log_id,
            status=status,
            processed_at=datetime.utcnow(),
            response_code=200,
            response_body=response,
        )
        logger.info("Webhook processed | webhook_id=%s | status=%s", log_id, status)
        return HandlerResponse(200, response)

    def _trigger_etl(self, log_id: str, template_id, payload: Dict[str, Any]) -> None:
        """作业失败记录在作业上，不影响 webhook 本身的状态"""
        job_id = self.context.etl.queue_job(template_id, payload, webhook_log_id=log_id)
        result = self.context.etl.run_job(job_id)
        if not result.ok:
            logger.warning("Auto ETL job did not complete | webhook_id=%s | job_id=%s | status=%s",
                           log_id, job_id, result.status_code)

    # ------------------------------------------------------------------
    # 日志管理
    # ------------------------------------------------------------------

    def get_log(self, log_id) -> dict:
        parsed = require_uuid(log_id, "Webhook log")
        with session_scope(self.context.session_factory) as db:
            log = db.query(WebhookLog).filter(WebhookLog.id == parsed).first()
            if log is None:
                raise NotFound(f"Webhook log not found: {log_id}")
            return log.to_dict()

    def list_logs(self, endpoint_id=None, status: Optional[str] = None,
                  page: int = 1, per_page: int = 20) -> Dict[str, Any]:
        per_page = max(1, min(per_page, 100))
        page = max(1, page)
        with session_scope(self.context.session_factory) as db:
            query = db.query(WebhookLog)
            if endpoint_id:
                query = query.filter(WebhookLog.endpoint_id == require_uuid(endpoint_id, "Endpoint"))
            if status:
                query = query.filter(WebhookLog.status == status)
            total = query.count()
            logs = (
                query.order_by(WebhookLog.created_at.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return {
                "items": [log.to_dict() for log in logs],
                "total": total,
                "page": page,
                "per_page": per_page,
            }

    def retry(self, log_id, max_retries: int = DEFAULT_MAX_RETRIES) -> Dict[str, Any]:
        """
        重新处理已保存的负载（跳过签名校验）。

        Raises:
            NotFound: 日志不存在
            ValidationError: 已达最大重试次数
        """
        log = self.get_log(log_id)
        if log["retry_count"] >= max_retries:
            raise ValidationError("Maximum retry attempts reached")

        self._update_log(log["id"], retry_count=log["retry_count"] + 1, status=STATUS_PENDING, error_message=None)

        with session_scope(self.context.session_factory) as db:
            endpoint = db.query(CustomEndpoint).filter(CustomEndpoint.id == parse_uuid(log["endpoint_id"])).first()
            config = (endpoint.handler_config or {}) if endpoint else {}

        request = InboundRequest(
            method=log["request_method"],
            path="",
            headers=log["request_headers"] or {},
            query_params=log["query_params"] or {},
            body=(log["request_payload"] or "").encode("utf-8"),
        )
        payload = extract_payload(request)
        self.context.bus.emit("webhook.retry", payload, log, log["id"])

        try:
            self._complete(log["id"], payload, config)
        except Exception as e:
            logger.exception("Webhook retry failed | webhook_id=%s", log["id"])
            self._update_log(log["id"], status=STATUS_FAILED, error_message=str(e), processed_at=datetime.utcnow())
            raise

        return {"message": "Webhook retry initiated", "log_id": log["id"], "retry_count": log["retry_count"] + 1}

    def retry_failed(self, max_retries: int = DEFAULT_MAX_RETRIES, limit: int = 50) -> Dict[str, Any]:
        """重试所有未达上限的失败日志，供调度任务调用"""
        with session_scope(self.context.session_factory) as db:
            ids = [
                str(row.id) for row in
                db.query(WebhookLog.id)
                .filter(WebhookLog.status == STATUS_FAILED, WebhookLog.retry_count < max_retries)
                .order_by(WebhookLog.created_at.asc())
                .limit(limit)
                .all()
            ]
        retried = 0
        failed = 0
        for log_id in ids:
            try:
                self.retry(log_id, max_retries)
                retried += 1
            except Exception as e:
                logger.warning("Webhook retry skipped | webhook_id=%s | error=%s", log_id, e)
                failed += 1
        return {"retried": retried, "failed": failed}

    def cleanup(self, days_old: int = 30) -> int:
        cutoff = datetime.utcnow() - timedelta(days=days_old)
        with session_scope(self.context.session_factory) as db:
            deleted = db.query(WebhookLog).filter(WebhookLog.created_at < cutoff).delete(synchronize_session=False)
        logger.info("Webhook logs cleaned up | deleted=%s | days_old=%s", deleted, days_old)
        return deleted
