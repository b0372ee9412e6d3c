"""
Recurring download scheduler.

Each (tenant, user, environment) identity owns at most one configuration
and one APScheduler cron job. A fire posts a trigger payload to the
workflow engine, which calls back into the download API.
"""
import logging
import time
from typing import Any, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers import SchedulerNotRunningError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from database.repositories.scheduler_repo import ExecutionStatus, SchedulerRepository
from scheduler.cron import ScheduleType, build_cron_expression, build_trigger, next_fire_time, validate_cron
from scheduler.workflow_client import WorkflowClient, WorkflowResult
from shared.config import settings
from shared.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from shared.utils import environment_label

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIME = "22:00"


class TriggerSource:
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class SchedulerService:
    """Manages scheduler configs, their timers and execution history."""

    def __init__(
        self,
        repo: SchedulerRepository,
        workflow_client: WorkflowClient,
        scheduler: Optional[AsyncIOScheduler] = None,
        api_base_url: Optional[str] = None
    ):
        self.repo = repo
        self.workflow_client = workflow_client
        self.scheduler = scheduler or AsyncIOScheduler(timezone=settings.scheduler_timezone)
        self.api_base_url = (api_base_url or settings.api_base_url).rstrip("/")

    @staticmethod
    def timer_id(tenant_id: int, is_live: bool, user_id: int) -> str:
        return f"nav_scheduler_{tenant_id}_{environment_label(is_live)}_{user_id}"

    # ==================== Configuration ====================

    async def save_config(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        schedule_type: Optional[str] = None,
        download_time: Optional[str] = None,
        cron_expression: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        webhook_url: Optional[str] = None,
        create: bool = False
    ) -> Dict[str, Any]:
        """
        Create (`create=True`) or update the identity's config and sync its timer.

        Unset arguments keep their stored values. Without an explicit cron
        expression one is derived from the schedule type and download time.
        """
        existing = await self.repo.get_config(tenant_id, is_live, user_id)
        if create and existing:
            raise ConflictError(
                "User already has a scheduler configuration. Use update instead.",
                code=ErrorCodes.SCHEDULER_CONFIG_EXISTS
            )
        if not create and not existing:
            raise NotFoundError("Scheduler configuration not found", code=ErrorCodes.SCHEDULER_CONFIG_NOT_FOUND)

        base = existing or {}
        schedule_type = schedule_type or base.get("schedule_type", ScheduleType.DAILY)
        if schedule_type not in ScheduleType.ALL:
            raise ValidationError(f"Invalid schedule type '{schedule_type}'")
        download_time = download_time or base.get("download_time", DEFAULT_DOWNLOAD_TIME)

        if cron_expression:
            cron_expression = validate_cron(cron_expression)
        elif schedule_type == ScheduleType.CUSTOM:
            if not base.get("cron_expression"):
                raise ValidationError("Custom schedules require a cron expression")
            cron_expression = base["cron_expression"]
        else:
            cron_expression = build_cron_expression(schedule_type, download_time)

        is_enabled = base.get("is_enabled", True) if is_enabled is None else is_enabled
        webhook_url = webhook_url or base.get("webhook_url") or settings.default_webhook_url
        next_execution_at = next_fire_time(cron_expression) if is_enabled else None

        if create:
            config = await self.repo.create_config(
                tenant_id, is_live, user_id,
                schedule_type=schedule_type,
                cron_expression=cron_expression,
                download_time=download_time,
                is_enabled=is_enabled,
                webhook_url=webhook_url,
                next_execution_at=next_execution_at
            )
        else:
            config = await self.repo.update_config(tenant_id, is_live, user_id, {
                "schedule_type": schedule_type,
                "cron_expression": cron_expression,
                "download_time": download_time,
                "is_enabled": is_enabled,
                "webhook_url": webhook_url,
                "next_execution_at": next_execution_at
            })
            if config is None:
                raise NotFoundError("Scheduler configuration not found", code=ErrorCodes.SCHEDULER_CONFIG_NOT_FOUND)

        if is_enabled:
            self._start_timer(config)
        else:
            self._stop_timer(tenant_id, is_live, user_id)

        logger.info(
            f"Scheduler config {config['_id']} saved for tenant {tenant_id} user {user_id} "
            f"({environment_label(is_live)}): '{cron_expression}', enabled={is_enabled}"
        )
        return config

    async def get_config(self, tenant_id: int, is_live: bool, user_id: int) -> Optional[Dict[str, Any]]:
        return await self.repo.get_config(tenant_id, is_live, user_id)

    async def delete_config(self, tenant_id: int, is_live: bool, user_id: int):
        """Stop the timer and delete the config."""
        self._stop_timer(tenant_id, is_live, user_id)
        if not await self.repo.delete_config(tenant_id, is_live, user_id):
            raise NotFoundError("Scheduler configuration not found", code=ErrorCodes.SCHEDULER_CONFIG_NOT_FOUND)
        logger.info(f"Scheduler config deleted for tenant {tenant_id} user {user_id} ({environment_label(is_live)})")

    async def get_status(self, tenant_id: int, is_live: bool, user_id: int) -> Dict[str, Any]:
        """Config, timer state and recent execution history."""
        config = await self.repo.get_config(tenant_id, is_live, user_id)
        if config is None:
            return {
                "config": None,
                "is_running": False,
                "next_run": None,
                "last_run": None,
                "recent_executions": []
            }

        timer = self.scheduler.get_job(self.timer_id(tenant_id, is_live, user_id))
        next_run = getattr(timer, "next_run_time", None) if timer else None
        executions = await self.repo.recent_executions(config["_id"], settings.recent_executions_limit)
        return {
            "config": config,
            "is_running": timer is not None,
            "next_run": next_run or config.get("next_execution_at"),
            "last_run": config.get("last_executed_at"),
            "recent_executions": executions
        }

    # ==================== Execution ====================

    async def manual_trigger(self, tenant_id: int, is_live: bool, user_id: int) -> WorkflowResult:
        """Fire the identity's workflow now, outside its cron cadence."""
        config = await self.repo.get_config(tenant_id, is_live, user_id)
        if config is None:
            raise NotFoundError("Scheduler configuration not found", code=ErrorCodes.SCHEDULER_CONFIG_NOT_FOUND)
        return await self._execute(config, TriggerSource.MANUAL)

    async def run_scheduled(self, tenant_id: int, is_live: bool, user_id: int) -> Optional[WorkflowResult]:
        """Timer callback. Reloads the config so edits made since scheduling apply."""
        config = await self.repo.get_config(tenant_id, is_live, user_id)
        if config is None:
            logger.warning(f"Scheduled fire for missing config (tenant {tenant_id}, user {user_id}); removing timer")
            self._stop_timer(tenant_id, is_live, user_id)
            return None
        if not config.get("is_enabled"):
            await self.repo.create_execution(config["_id"], ExecutionStatus.SKIPPED, TriggerSource.SCHEDULED)
            logger.info(f"Scheduler config {config['_id']} is disabled; execution skipped")
            return None
        return await self._execute(config, TriggerSource.SCHEDULED)

    async def _execute(self, config: Dict[str, Any], trigger_source: str) -> WorkflowResult:
        started = time.monotonic()
        execution = await self.repo.create_execution(config["_id"], ExecutionStatus.RUNNING, trigger_source)
        await self.repo.mark_executed(config["_id"], self._next_run(config))

        payload = {
            "tenant_id": config["tenant_id"],
            "user_id": config["user_id"],
            "is_live": config["is_live"],
            "schedule_type": config["schedule_type"],
            "trigger_source": trigger_source,
            "api_callback_url": f"{self.api_base_url}/downloads/daily",
            "scheduler_config_id": config["_id"]
        }
        result = await self.workflow_client.trigger(config.get("webhook_url") or settings.default_webhook_url, payload)
        duration_ms = int((time.monotonic() - started) * 1000)

        if result.success:
            await self.repo.update_execution(
                execution["_id"],
                status=ExecutionStatus.SUCCESS,
                workflow_execution_id=result.execution_id,
                execution_duration_ms=duration_ms
            )
            logger.info(f"Scheduler {config['_id']} fired ({trigger_source}): workflow execution {result.execution_id}")
        else:
            await self.repo.update_execution(
                execution["_id"],
                status=ExecutionStatus.FAILED,
                error_message=result.error,
                execution_duration_ms=duration_ms
            )
            await self.repo.increment_failure(config["_id"])
            logger.error(f"Scheduler {config['_id']} fire failed ({trigger_source}): {result.error}")
        return result

    def _next_run(self, config: Dict[str, Any]):
        timer = self.scheduler.get_job(self.timer_id(config["tenant_id"], config["is_live"], config["user_id"]))
        next_run = getattr(timer, "next_run_time", None) if timer else None
        return next_run or next_fire_time(config["cron_expression"])

    # ==================== Timers ====================

    def _start_timer(self, config: Dict[str, Any]):
        """(Re)create the cron job for a config, replacing any previous one."""
        if not self.scheduler.running:
            self.scheduler.start()
        timer_id = self.timer_id(config["tenant_id"], config["is_live"], config["user_id"])
        self.scheduler.add_job(
            self.run_scheduled,
            build_trigger(config["cron_expression"]),
            id=timer_id,
            kwargs={
                "tenant_id": config["tenant_id"],
                "is_live": config["is_live"],
                "user_id": config["user_id"]
            },
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=settings.scheduler_misfire_grace_seconds
        )
        logger.debug(f"Timer {timer_id} scheduled with '{config['cron_expression']}'")

    def _stop_timer(self, tenant_id: int, is_live: bool, user_id: int) -> bool:
        timer_id = self.timer_id(tenant_id, is_live, user_id)
        try:
            self.scheduler.remove_job(timer_id)
        except JobLookupError:
            return False
        logger.debug(f"Timer {timer_id} stopped")
        return True

    def get_all_active_schedulers(self) -> List[Dict[str, Any]]:
        """Every live timer, for monitoring."""
        return [
            {"timer_id": job.id, "next_run": getattr(job, "next_run_time", None)}
            for job in self.scheduler.get_jobs()
        ]

    # ==================== Lifecycle ====================

    async def initialize_all(self) -> int:
        """Start timers for every enabled config. A bad config is logged and skipped."""
        if not self.scheduler.running:
            self.scheduler.start()

        configs = await self.repo.list_enabled()
        started = 0
        for config in configs:
            try:
                self._start_timer(config)
                started += 1
            except Exception as e:
                logger.exception(f"Failed to start scheduler {config.get('_id')}: {e}")
        logger.info(f"Initialized {started}/{len(configs)} scheduler(s)")
        return started

    def shutdown_all(self):
        """Stop every timer and the APScheduler loop. Safe to call repeatedly."""
        for job in self.scheduler.get_jobs():
            try:
                self.scheduler.remove_job(job.id)
            except JobLookupError:
                continue
        try:
            self.scheduler.shutdown(wait=False)
        except SchedulerNotRunningError:
            pass
        logger.info("All schedulers stopped")
