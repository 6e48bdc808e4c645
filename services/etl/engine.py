"""
ETL 流水线引擎

作业状态只向前推进：pending → extracting → transforming → loading → completed，
任一阶段失败直接进入 failed。每个阶段结束后持久化快照，失败时记录
error_stage（来自 PipelineStageFailure.stage）与 error_message。

事件:
  etl.job_queued(job_id, template_id, webhook_log_id)
  etl.job_completed(job_id, template_id, load_result)
  etl.job_failed(job_id, template_id, error_message)
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from services.etl.loaders import LoadDestination, Loader
from services.etl.stages import Extractor, Transformer
from services.etl.transformations import TransformationLibrary
from shared.database import session_scope
from shared.errors import NotFound, PipelineStageFailure, ValidationError
from shared.http_types import HandlerResponse, InboundRequest
from shared.models.etl import ETLJob, ETLTemplate
from shared.utils.validators import parse_uuid, require_fields, require_uuid

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_EXTRACTING = "extracting"
STATUS_TRANSFORMING = "transforming"
STATUS_LOADING = "loading"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

STAGE_EXTRACT = "extract"
STAGE_TRANSFORM = "transform"
STAGE_LOAD = "load"

TEMPLATE_FIELDS = [
    "name", "description", "extract_config", "transform_config",
    "field_mappings", "load_config", "external_service_id", "is_active",
]


class ETLEngine:
    """
    ETL 引擎

    Args:
        context: AppContext（session_factory / bus / transformers / settings_store / settings）
    """

    def __init__(self, context):
        self.context = context
        self.library = TransformationLibrary(context.transformers)
        self.extractor = Extractor(context.bus)
        self.transformer = Transformer(context.bus, self.library)
        self.loader = Loader(context)

    # ------------------------------------------------------------------
    # 端点入口
    # ------------------------------------------------------------------

    def process(self, request: InboundRequest, template_id, definition: Optional[Dict[str, Any]] = None) -> HandlerResponse:
        """
        etl 处理策略：以请求数据创建作业并同步执行。

        Returns:
            模板不存在 404，模板已停用 400，其余见 run_job
        """
        template = self._find_template(template_id)
        if template is None:
            return HandlerResponse(404, {"message": "ETL template not found"})
        if not template["is_active"]:
            return HandlerResponse(400, {"message": "ETL template is inactive"})

        body = request.json()
        input_data = body if isinstance(body, list) else request.merged_data()
        job_id = self.create_job(template["id"], input_data)
        return self.run_job(job_id)

    # ------------------------------------------------------------------
    # 作业
    # ------------------------------------------------------------------

    def create_job(self, template_id, input_data: Any, webhook_log_id=None) -> str:
        with session_scope(self.context.session_factory) as db:
            job = ETLJob(
                template_id=require_uuid(template_id, "ETL template"),
                webhook_log_id=parse_uuid(webhook_log_id) if webhook_log_id else None,
                status=STATUS_PENDING,
                input_data=input_data,
            )
            db.add(job)
            db.flush()
            return str(job.id)

    def queue_job(self, template_id, input_data: Any, webhook_log_id=None) -> str:
        """为 webhook 创建作业（关联 webhook_log_id），由调用方决定何时执行"""
        job_id = self.create_job(template_id, input_data, webhook_log_id)
        self.context.bus.emit("etl.job_queued", job_id, str(template_id), webhook_log_id)
        logger.info("ETL job queued | job_id=%s | template_id=%s", job_id, template_id)
        return job_id

    def _update_job(self, job_id: str, **values) -> None:
        with session_scope(self.context.session_factory) as db:
            job = db.query(ETLJob).filter(ETLJob.id == parse_uuid(job_id)).first()
            if job is None:
                raise NotFound(f"ETL job not found: {job_id}")
            for key, value in values.items():
                setattr(job, key, value)

    def _run_stage(self, stage: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except PipelineStageFailure:
            raise
        except Exception as e:
            raise PipelineStageFailure(stage, str(e) or e.__class__.__name__) from e

    def run_job(self, job_id) -> HandlerResponse:
        """
        执行作业的三个阶段。

        Args:
            job_id: 作业 ID

        Returns:
            200 {"message", "job_id", "result"}；失败 500 {"message", "job_id"}，
            message 仅在调试模式下包含具体错误
        """
        job = self.get_job(job_id)
        template = self._find_template(job["template_id"])
        if template is None:
            return HandlerResponse(404, {"message": "ETL template not found", "job_id": job["id"]})
        job_id = job["id"]

        try:
            self._update_job(job_id, status=STATUS_EXTRACTING, started_at=datetime.utcnow())
            extracted = self._run_stage(STAGE_EXTRACT, lambda: self.extractor.run(job["input_data"], template))

            self._update_job(job_id, status=STATUS_TRANSFORMING, extracted_data=extracted)
            transformed = self._run_stage(STAGE_TRANSFORM, lambda: self.transformer.run(extracted, template))

            self._update_job(job_id, status=STATUS_LOADING, transformed_data=transformed)
            load_result = self._run_stage(STAGE_LOAD, lambda: self.loader.run(transformed, template))
        except PipelineStageFailure as e:
            self._update_job(
                job_id,
                status=STATUS_FAILED,
                error_stage=e.stage,
                error_message=e.message,
                completed_at=datetime.utcnow(),
            )
            logger.error("ETL job failed | job_id=%s | stage=%s | error=%s", job_id, e.stage, e.message)
            self.context.bus.emit("etl.job_failed", job_id, template["id"], e.message)
            message = e.message if self._debug() else "ETL job failed"
            return HandlerResponse(500, {"message": message, "job_id": job_id})

        completed = {
            "status": STATUS_COMPLETED,
            "load_result": load_result,
            "completed_at": datetime.utcnow(),
        }
        if load_result.get("destination") == LoadDestination.EXTERNAL_SERVICE.value:
            completed["external_response_code"] = load_result.get("response_code")
            completed["external_response_body"] = load_result.get("response_body")
        self._update_job(job_id, **completed)

        logger.info("ETL job completed | job_id=%s | template_id=%s", job_id, template["id"])
        self.context.bus.emit("etl.job_completed", job_id, template["id"], load_result)
        return HandlerResponse(200, {
            "message": "ETL job completed successfully",
            "job_id": job_id,
            "result": load_result,
        })

    def _debug(self) -> bool:
        return bool(self.context.settings.DEBUG or self.context.settings_store.is_debug())

    def get_job(self, job_id) -> dict:
        parsed = require_uuid(job_id, "ETL job")
        with session_scope(self.context.session_factory) as db:
            job = db.query(ETLJob).filter(ETLJob.id == parsed).first()
            if job is None:
                raise NotFound(f"ETL job not found: {job_id}")
            return job.to_dict()

    def list_jobs(self, template_id=None, status: Optional[str] = None,
                  page: int = 1, per_page: int = 20) -> Dict[str, Any]:
        per_page = max(1, min(per_page, 100))
        page = max(1, page)
        with session_scope(self.context.session_factory) as db:
            query = db.query(ETLJob)
            if template_id:
                query = query.filter(ETLJob.template_id == require_uuid(template_id, "ETL template"))
            if status:
                query = query.filter(ETLJob.status == status)
            total = query.count()
            jobs = (
                query.order_by(ETLJob.created_at.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )
            return {
                "items": [job.to_dict() for job in jobs],
                "total": total,
                "page": page,
                "per_page": per_page,
            }

    def cleanup_jobs(self, days_old: int = 30) -> int:
        """删除早于 days_old 天的已完成作业"""
        cutoff = datetime.utcnow() - timedelta(days=days_old)
        with session_scope(self.context.session_factory) as db:
            deleted = (
                db.query(ETLJob)
                .filter(
                    ETLJob.status == STATUS_COMPLETED,
                    ETLJob.created_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
        logger.info("ETL jobs cleaned up | deleted=%s | days_old=%s", deleted, days_old)
        return deleted

    # ------------------------------------------------------------------
    # 模板
    # ------------------------------------------------------------------

    def _find_template(self, template_id) -> Optional[dict]:
        parsed = parse_uuid(template_id)
        if parsed is None:
            return None
        with session_scope(self.context.session_factory) as db:
            template = db.query(ETLTemplate).filter(ETLTemplate.id == parsed).first()
            return template.to_dict() if template else None

    def get_template(self, template_id) -> dict:
        template = self._find_template(template_id)
        if template is None:
            raise NotFound(f"ETL template not found: {template_id}")
        return template

    def list_templates(self, active_only: bool = False) -> List[dict]:
        with session_scope(self.context.session_factory) as db:
            query = db.query(ETLTemplate)
            if active_only:
                query = query.filter(ETLTemplate.is_active.is_(True))
            return [t.to_dict() for t in query.order_by(ETLTemplate.created_at.asc()).all()]

    def _validate_template(self, data: Dict[str, Any]) -> Dict[str, Any]:
        destination = (data.get("load_config") or {}).get("destination")
        if destination:
            try:
                LoadDestination(destination)
            except ValueError:
                raise ValidationError(f"Unknown load destination: {destination}") from None
        values = {k: data[k] for k in TEMPLATE_FIELDS if k in data}
        if "external_service_id" in values:
            values["external_service_id"] = parse_uuid(values["external_service_id"])
        return values

    def create_template(self, data: Dict[str, Any]) -> dict:
        require_fields(data, ["name"])
        values = self._validate_template(data)
        values.setdefault("is_active", True)
        with session_scope(self.context.session_factory) as db:
            template = ETLTemplate(**values)
            db.add(template)
            db.flush()
            result = template.to_dict()
        logger.info("ETL template created | template_id=%s | name=%s", result["id"], result["name"])
        return result

    def update_template(self, template_id, data: Dict[str, Any]) -> dict:
        parsed = require_uuid(template_id, "ETL template")
        values = self._validate_template(data)
        with session_scope(self.context.session_factory) as db:
            template = db.query(ETLTemplate).filter(ETLTemplate.id == parsed).first()
            if template is None:
                raise NotFound(f"ETL template not found: {template_id}")
            for key, value in values.items():
                setattr(template, key, value)
            db.flush()
            return template.to_dict()

    def delete_template(self, template_id) -> None:
        parsed = require_uuid(template_id, "ETL template")
        with session_scope(self.context.session_factory) as db:
            deleted = db.query(ETLTemplate).filter(ETLTemplate.id == parsed).delete(synchronize_session=False)
        if not deleted:
            raise NotFound(f"ETL template not found: {template_id}")

    def test_template(self, template_id, test_data: Any) -> HandlerResponse:
        """不经过端点，直接用给定数据执行模板"""
        template = self.get_template(template_id)
        job_id = self.create_job(template["id"], test_data if test_data is not None else {})
        return self.run_job(job_id)
