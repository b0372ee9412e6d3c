"""Scheduler repository: recurring download configs and their execution history."""
from datetime import datetime
from typing import Optional, List, Dict, Any
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from shared.errors import ConflictError, ErrorCodes
from shared.utils import generate_config_id, generate_execution_id, get_utc_now


class ExecutionStatus:
    """Schedule execution status constants."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SchedulerRepository:
    """Repository for scheduler_configs and schedule_executions."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.configs = db.scheduler_configs
        self.executions = db.schedule_executions

    # ==================== Configs ====================

    async def get_config(self, tenant_id: int, is_live: bool, user_id: int) -> Optional[Dict[str, Any]]:
        """Get the config for a (tenant, environment, user) identity."""
        return await self.configs.find_one({"tenant_id": tenant_id, "is_live": is_live, "user_id": user_id})

    async def create_config(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        schedule_type: str,
        cron_expression: str,
        download_time: str,
        is_enabled: bool,
        webhook_url: str,
        next_execution_at: Optional[datetime]
    ) -> Dict[str, Any]:
        """Create a config; one per identity."""
        now = get_utc_now()
        config = {
            "_id": generate_config_id(),
            "tenant_id": tenant_id,
            "is_live": is_live,
            "user_id": user_id,
            "schedule_type": schedule_type,
            "cron_expression": cron_expression,
            "download_time": download_time,
            "is_enabled": is_enabled,
            "webhook_url": webhook_url,
            "last_executed_at": None,
            "next_execution_at": next_execution_at,
            "execution_count": 0,
            "failure_count": 0,
            "created_at": now,
            "updated_at": now
        }
        try:
            await self.configs.insert_one(config)
        except DuplicateKeyError as e:
            raise ConflictError(
                "User already has a scheduler configuration. Use update instead.",
                code=ErrorCodes.SCHEDULER_CONFIG_EXISTS
            ) from e
        return config

    async def update_config(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Update a config in place and return it, or None if it does not exist."""
        fields = dict(fields, updated_at=get_utc_now())
        return await self.configs.find_one_and_update(
            {"tenant_id": tenant_id, "is_live": is_live, "user_id": user_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER
        )

    async def delete_config(self, tenant_id: int, is_live: bool, user_id: int) -> bool:
        result = await self.configs.delete_one({"tenant_id": tenant_id, "is_live": is_live, "user_id": user_id})
        return result.deleted_count > 0

    async def list_enabled(self) -> List[Dict[str, Any]]:
        """Every enabled config across tenants."""
        cursor = self.configs.find({"is_enabled": True})
        return await cursor.to_list(length=None)

    async def mark_executed(self, config_id: str, next_execution_at: Optional[datetime]):
        """Record a fire: last/next execution time and execution counter."""
        await self.configs.update_one(
            {"_id": config_id},
            {
                "$set": {"last_executed_at": get_utc_now(), "next_execution_at": next_execution_at},
                "$inc": {"execution_count": 1}
            }
        )

    async def increment_failure(self, config_id: str):
        await self.configs.update_one({"_id": config_id}, {"$inc": {"failure_count": 1}})

    # ==================== Executions ====================

    async def create_execution(self, config_id: str, status: str, trigger_source: str) -> Dict[str, Any]:
        """Append an execution history row."""
        execution = {
            "_id": generate_execution_id(),
            "scheduler_config_id": config_id,
            "execution_time": get_utc_now(),
            "status": status,
            "trigger_source": trigger_source,
            "workflow_execution_id": None,
            "error_message": None,
            "execution_duration_ms": None
        }
        await self.executions.insert_one(execution)
        return execution

    async def update_execution(self, execution_id: str, **fields):
        """Set the outcome fields of an execution row."""
        fields = {key: value for key, value in fields.items() if value is not None}
        if not fields:
            return
        await self.executions.update_one({"_id": execution_id}, {"$set": fields})

    async def recent_executions(self, config_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = self.executions.find({"scheduler_config_id": config_id}).sort("execution_time", -1).limit(limit)
        return await cursor.to_list(length=limit)
