"""
定时任务调度器

由宿主 cron 周期性触发（scripts/run_scheduler.py），每次 tick:
  1. 按 priority 降序选出至多 scheduler_max_tasks_per_run 个到期、启用、未在运行的任务
  2. 逐个原子领取：UPDATE ... WHERE status != 'running'（或 running 已超过
     scheduler_stale_after 秒），受影响行数为 1 才执行，两个并发 tick 不会重复执行同一任务
  3. 按 task_type 分发，记录耗时、运行/失败计数、下次运行时间与 last_result
  4. 写事件日志并触发 task.executed

任务失败只增加 fail_count，不影响后续调度。
"""
import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_

from shared.database import session_scope
from shared.errors import NotFound, ValidationError
from shared.http_types import HandlerResponse
from shared.models.external_service import ExternalService
from shared.models.scheduler import ScheduledTask
from shared.utils.validators import require_fields, require_uuid

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PAUSED = "paused"

DEFAULT_INTERVAL = 3600
DEFAULT_PRIORITY = 10
DEFAULT_MAX_TASKS_PER_RUN = 10
DEFAULT_STALE_AFTER = 3600


class TaskType(str, Enum):
    ETL = "etl"
    CLEANUP = "cleanup"
    HEALTH_CHECK = "health_check"
    WEBHOOK_RETRY = "webhook_retry"
    CUSTOM = "custom"


class Frequency(str, Enum):
    ONCE = "once"
    HOURLY = "hourly"
    TWICEDAILY = "twicedaily"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    EVERY_MINUTE = "every_minute"
    EVERY_5_MINUTES = "every_5_minutes"
    EVERY_15_MINUTES = "every_15_minutes"
    EVERY_30_MINUTES = "every_30_minutes"


# 间隔秒数；ONCE 无下次运行
FREQUENCY_SECONDS: Dict[Frequency, Optional[int]] = {
    Frequency.ONCE: None,
    Frequency.HOURLY: 3600,
    Frequency.TWICEDAILY: 43200,
    Frequency.DAILY: 86400,
    Frequency.WEEKLY: 604800,
    Frequency.MONTHLY: 2592000,
    Frequency.EVERY_MINUTE: 60,
    Frequency.EVERY_5_MINUTES: 300,
    Frequency.EVERY_15_MINUTES: 900,
    Frequency.EVERY_30_MINUTES: 1800,
}

BUILTIN_TASKS: List[Dict[str, Any]] = [
    {
        "name": "Cleanup Webhook Logs",
        "description": "Delete webhook logs older than the retention period",
        "task_type": TaskType.CLEANUP.value,
        "handler": "cleanup_webhook_logs",
        "frequency": Frequency.DAILY.value,
        "config": {"days_old": 30},
    },
    {
        "name": "Cleanup Event Logs",
        "description": "Delete non-critical event logs older than the retention period",
        "task_type": TaskType.CLEANUP.value,
        "handler": "cleanup_event_logs",
        "frequency": Frequency.DAILY.value,
        "config": {"days_old": 90},
    },
    {
        "name": "Check External Services",
        "description": "Refresh health status of active external services",
        "task_type": TaskType.HEALTH_CHECK.value,
        "handler": "check_external_services",
        "frequency": Frequency.HOURLY.value,
        "config": {},
    },
    {
        "name": "Retry Failed Webhooks",
        "description": "Re-process failed webhook logs under the retry cap",
        "task_type": TaskType.WEBHOOK_RETRY.value,
        "handler": "retry_failed_webhooks",
        "frequency": Frequency.EVERY_15_MINUTES.value,
        "config": {"max_retries": 3},
    },
]

TASK_FIELDS = ["name", "description", "task_type", "handler", "frequency", "config", "priority", "is_active", "next_run_at"]

TaskHandler = Callable[[Dict[str, Any], Dict[str, Any]], Any]


def calculate_next_run(frequency: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    计算下次运行时间。

    Args:
        frequency: 频率名称，未知频率按 hourly 处理
        now: 基准时间，默认当前 UTC 时间

    Returns:
        下次运行时间；once 返回 None
    """
    now = now or datetime.utcnow()
    try:
        seconds = FREQUENCY_SECONDS[Frequency(frequency)]
    except ValueError:
        seconds = DEFAULT_INTERVAL
    if seconds is None:
        return None
    return now + timedelta(seconds=seconds)


def _result(success: bool, message: str = "", data: Any = None) -> Dict[str, Any]:
    return {"success": success, "message": message, "data": data}


class Scheduler:
    """
    调度器

    Args:
        context: AppContext（session_factory / settings_store / event_logger / bus /
            etl / webhooks / connector / database / task_handlers / actions）
    """

    def __init__(self, context):
        self.context = context
        self._dispatch: Dict[TaskType, Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]] = {
            TaskType.ETL: self._run_etl_task,
            TaskType.CLEANUP: self._run_cleanup_task,
            TaskType.HEALTH_CHECK: self._run_health_check_task,
            TaskType.WEBHOOK_RETRY: self._run_webhook_retry_task,
            TaskType.CUSTOM: self._run_custom_task,
        }
        self._cleanup_handlers: Dict[str, Callable[[int], int]] = {
            "cleanup_webhook_logs": lambda days: context.webhooks.cleanup(days),
            "cleanup_event_logs": lambda days: context.event_logger.cleanup(days),
            "cleanup_etl_jobs": lambda days: context.etl.cleanup_jobs(days),
        }

    # ------------------------------------------------------------------
    # 内置任务
    # ------------------------------------------------------------------

    def ensure_builtin_tasks(self) -> int:
        """按 handler 名称幂等写入内置系统任务，返回新建数量"""
        created = 0
        now = datetime.utcnow()
        with session_scope(self.context.session_factory) as db:
            existing = {row.handler for row in db.query(ScheduledTask.handler).all()}
            for spec in BUILTIN_TASKS:
                if spec["handler"] in existing:
                    continue
                db.add(ScheduledTask(
                    is_system=True,
                    is_active=True,
                    status=STATUS_PENDING,
                    priority=DEFAULT_PRIORITY,
                    next_run_at=calculate_next_run(spec["frequency"], now),
                    **spec,
                ))
                created += 1
        if created:
            logger.info("Built-in scheduled tasks seeded | created=%s", created)
        return created

    # ------------------------------------------------------------------
    # tick
    # ------------------------------------------------------------------

    def _stale_cutoff(self, now: datetime) -> datetime:
        stale_after = int(self.context.settings_store.get("scheduler_stale_after") or DEFAULT_STALE_AFTER)
        return now - timedelta(seconds=stale_after)

    def _claimable(self, now: datetime):
        return or_(
            ScheduledTask.status != STATUS_RUNNING,
            ScheduledTask.claimed_at.is_(None),
            ScheduledTask.claimed_at < self._stale_cutoff(now),
        )

    def claim(self, task_id, now: Optional[datetime] = None) -> bool:
        """
        原子领取任务。

        Returns:
            本次调用是否获得执行权
        """
        now = now or datetime.utcnow()
        with session_scope(self.context.session_factory) as db:
            claimed = (
                db.query(ScheduledTask)
                .filter(ScheduledTask.id == require_uuid(task_id, "Scheduled task"), self._claimable(now))
                .update(
                    {"status": STATUS_RUNNING, "claimed_at": now, "last_run_at": now},
                    synchronize_session=False,
                )
            )
        return claimed == 1

    def due_tasks(self, now: Optional[datetime] = None) -> List[dict]:
        now = now or datetime.utcnow()
        limit = int(self.context.settings_store.get("scheduler_max_tasks_per_run") or DEFAULT_MAX_TASKS_PER_RUN)
        with session_scope(self.context.session_factory) as db:
            tasks = (
                db.query(ScheduledTask)
                .filter(
                    ScheduledTask.is_active.is_(True),
                    self._claimable(now),
                    or_(ScheduledTask.next_run_at.is_(None), ScheduledTask.next_run_at <= now),
                )
                .order_by(ScheduledTask.priority.desc(), ScheduledTask.next_run_at.asc())
                .limit(limit)
                .all()
            )
            return [task.to_dict() for task in tasks]

    def execute_due_tasks(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        执行一次调度 tick。

        Returns:
            [{"task_id", "result"}]，未领取到的任务不在其中
        """
        if not self.context.settings_store.get("scheduler_enabled", True):
            logger.info("Scheduler disabled, tick skipped")
            return []

        executed = []
        try:
            for task in self.due_tasks(now):
                if not self.claim(task["id"], now):
                    logger.info("Task already claimed | task_id=%s", task["id"])
                    continue
                executed.append({"task_id": task["id"], "result": self.execute_task(task)})
        finally:
            self.context.event_logger.flush()
        return executed

    def execute_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        """
        执行已领取的任务并记录结果。

        Args:
            task: 任务字典（to_dict 形式）

        Returns:
            {"success", "message", "data"}
        """
        start = time.time()
        config = task.get("config") or {}
        try:
            task_type: Optional[TaskType] = TaskType(task["task_type"])
        except ValueError:
            task_type = None

        if task_type is None:
            result = _result(False, f"Unknown task type: {task['task_type']}")
        else:
            try:
                result = self._dispatch[task_type](task, config)
            except Exception as e:
                logger.exception("Scheduled task failed | task_id=%s | handler=%s", task["id"], task["handler"])
                result = _result(False, str(e))

        duration_ms = int((time.time() - start) * 1000)
        success = bool(result.get("success"))
        next_run = calculate_next_run(task["frequency"])

        with session_scope(self.context.session_factory) as db:
            record = db.query(ScheduledTask).filter(ScheduledTask.id == require_uuid(task["id"])).first()
            if record is not None:
                record.status = STATUS_COMPLETED if success else STATUS_FAILED
                record.next_run_at = next_run
                record.claimed_at = None
                record.last_result = result
                record.last_duration_ms = duration_ms
                record.run_count = (record.run_count or 0) + 1
                if not success:
                    record.fail_count = (record.fail_count or 0) + 1
                if next_run is None:
                    record.is_active = False

        self.context.event_logger.log(
            "scheduler",
            "Task completed" if success else "Task failed",
            {
                "task_id": task["id"],
                "task_name": task["name"],
                "duration_ms": duration_ms,
                "message": result.get("message"),
            },
            level="info" if success else "error",
        )
        self.context.bus.emit("task.executed", task["id"], result)
        return result

    # ------------------------------------------------------------------
    # 任务类型
    # ------------------------------------------------------------------

    def _run_etl_task(self, task: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        template_id = config.get("template_id")
        if not template_id:
            return _result(False, "No template ID configured")

        data: Any = None
        if config.get("source_query"):
            query_result = self.context.database.execute_query(config["source_query"], config.get("query_params"))
            if query_result.ok:
                data = query_result.data
        elif config.get("source_endpoint"):
            response = self.context.connector.send(
                config.get("source_service_id"), config["source_endpoint"], {}, "GET",
            )
            if response.success:
                data = response.body

        if not data:
            return _result(True, "No data to process")

        etl = self.context.etl
        processed = 0
        failed = 0
        for item in data if isinstance(data, list) else [data]:
            job_id = etl.create_job(template_id, item)
            if etl.run_job(job_id).ok:
                processed += 1
            else:
                failed += 1
        return _result(failed == 0, f"Processed: {processed}, Failed: {failed}",
                       {"processed": processed, "failed": failed})

    def _run_cleanup_task(self, task: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._cleanup_handlers.get(task["handler"])
        if handler is None:
            return _result(False, "Unknown cleanup handler")
        deleted = handler(int(config.get("days_old", 30)))
        return _result(True, f"Deleted {deleted} rows", {"deleted": deleted})

    def _run_health_check_task(self, task: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        with session_scope(self.context.session_factory) as db:
            service_ids = [str(row.id) for row in db.query(ExternalService.id).filter(ExternalService.is_active.is_(True)).all()]

        statuses = {sid: self.context.connector.health_check(sid)["status"] for sid in service_ids}
        healthy = sum(1 for status in statuses.values() if status == "healthy")
        return _result(True, f"Checked {len(statuses)} services, {healthy} healthy", statuses)

    def _run_webhook_retry_task(self, task: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        outcome = self.context.webhooks.retry_failed(
            max_retries=int(config.get("max_retries", 3)),
            limit=int(config.get("limit", 10)),
        )
        return _result(True, f"Retried {outcome['retried']} webhooks", outcome)

    def _run_custom_task(self, task: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        handler = task["handler"]
        registry = self.context.task_handlers
        if registry.has(handler):
            outcome = registry.get(handler)(config, task)
            if isinstance(outcome, dict) and "success" in outcome:
                return _result(bool(outcome["success"]), outcome.get("message", ""), outcome.get("data"))
            return _result(True, "Task executed", outcome)

        actions = self.context.actions
        if actions.exists(handler):
            outcome = actions.execute(handler, dict(config), {"id": task.get("id"), "name": task.get("name")})
            if isinstance(outcome, HandlerResponse):
                return _result(outcome.status_code < 400, "Action executed", outcome.body)
            return _result(True, "Task executed", outcome)

        outcome = self.context.bus.apply_filters(
            f"task:{handler}",
            _result(False, "Handler not found"),
            config,
        )
        return outcome if isinstance(outcome, dict) else _result(bool(outcome), "Task executed", outcome)

    # ------------------------------------------------------------------
    # 任务管理
    # ------------------------------------------------------------------

    def _validate(self, data: Dict[str, Any]) -> None:
        if "task_type" in data:
            try:
                TaskType(data["task_type"])
            except ValueError:
                raise ValidationError(f"Invalid task type: {data['task_type']}") from None
        if "frequency" in data:
            try:
                Frequency(data["frequency"])
            except ValueError:
                raise ValidationError(f"Invalid frequency: {data['frequency']}") from None

    def create_task(self, data: Dict[str, Any]) -> dict:
        require_fields(data, ["name", "task_type", "handler", "frequency"])
        self._validate(data)
        values = {k: data[k] for k in TASK_FIELDS if data.get(k) is not None}
        values.setdefault("priority", DEFAULT_PRIORITY)
        values.setdefault("is_active", True)
        values.setdefault("next_run_at", datetime.utcnow())
        with session_scope(self.context.session_factory) as db:
            task = ScheduledTask(is_system=False, status=STATUS_PENDING, **values)
            db.add(task)
            db.flush()
            result = task.to_dict()
        logger.info("Scheduled task created | task_id=%s | handler=%s", result["id"], result["handler"])
        return result

    def update_task(self, task_id, data: Dict[str, Any]) -> dict:
        parsed = require_uuid(task_id, "Scheduled task")
        self._validate(data)
        with session_scope(self.context.session_factory) as db:
            task = db.query(ScheduledTask).filter(ScheduledTask.id == parsed).first()
            if task is None:
                raise NotFound(f"Scheduled task not found: {task_id}")
            for key in TASK_FIELDS + ["status"]:
                if key in data:
                    setattr(task, key, data[key])
            db.flush()
            return task.to_dict()

    def delete_task(self, task_id) -> None:
        """
        Raises:
            NotFound: 任务不存在
            ValidationError: 系统任务不可删除
        """
        parsed = require_uuid(task_id, "Scheduled task")
        with session_scope(self.context.session_factory) as db:
            task = db.query(ScheduledTask).filter(ScheduledTask.id == parsed).first()
            if task is None:
                raise NotFound(f"Scheduled task not found: {task_id}")
            if task.is_system:
                raise ValidationError("System tasks cannot be deleted")
            db.delete(task)

    def get_task(self, task_id) -> dict:
        parsed = require_uuid(task_id, "Scheduled task")
        with session_scope(self.context.session_factory) as db:
            task = db.query(ScheduledTask).filter(ScheduledTask.id == parsed).first()
            if task is None:
                raise NotFound(f"Scheduled task not found: {task_id}")
            return task.to_dict()

    def list_tasks(self) -> List[dict]:
        with session_scope(self.context.session_factory) as db:
            tasks = db.query(ScheduledTask).order_by(ScheduledTask.priority.desc(), ScheduledTask.name.asc()).all()
            return [task.to_dict() for task in tasks]

    def pause_task(self, task_id) -> dict:
        return self.update_task(task_id, {"is_active": False, "status": STATUS_PAUSED})

    def resume_task(self, task_id) -> dict:
        return self.update_task(task_id, {
            "is_active": True,
            "status": STATUS_PENDING,
            "next_run_at": datetime.utcnow(),
        })

    def run_now(self, task_id) -> Dict[str, Any]:
        """
        立即执行任务（不检查到期时间）。

        Raises:
            ValidationError: 任务正在运行
        """
        task = self.get_task(task_id)
        if not self.claim(task["id"]):
            raise ValidationError("Task is already running")
        try:
            return self.execute_task(task)
        finally:
            self.context.event_logger.flush()
