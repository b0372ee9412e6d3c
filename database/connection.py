"""Database connection setup for MongoDB."""
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from shared.config import settings


class DatabaseConnection:
    """Manages the MongoDB connection."""

    _mongo_client: Optional[AsyncIOMotorClient] = None
    _db: Optional[AsyncIOMotorDatabase] = None

    @classmethod
    async def init_mongo(cls) -> AsyncIOMotorDatabase:
        """Initialize MongoDB connection."""
        if cls._mongo_client is None:
            cls._mongo_client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
            cls._db = cls._mongo_client[settings.mongo_db_name]
            await cls._setup_indexes()
        return cls._db

    @classmethod
    async def _setup_indexes(cls):
        """Set up MongoDB indexes for optimal query performance."""
        if cls._db is None:
            return

        # Download jobs
        await cls._db.download_jobs.create_index([("tenant_id", 1), ("is_live", 1), ("status", 1)])
        await cls._db.download_jobs.create_index("parent_job_id")
        await cls._db.download_jobs.create_index("created_at")

        # NAV data: one row per scheme/date/environment
        await cls._db.nav_data.create_index(
            [("tenant_id", 1), ("scheme_id", 1), ("nav_date", 1), ("is_live", 1)],
            unique=True
        )

        # Scheme catalogue and bookmarks
        await cls._db.scheme_details.create_index([("tenant_id", 1), ("is_live", 1), ("scheme_code", 1)])
        await cls._db.scheme_bookmarks.create_index([("tenant_id", 1), ("is_live", 1), ("user_id", 1)])

        # Scheduler
        await cls._db.scheduler_configs.create_index(
            [("tenant_id", 1), ("user_id", 1), ("is_live", 1)],
            unique=True
        )
        await cls._db.schedule_executions.create_index([("scheduler_config_id", 1), ("execution_time", -1)])

    @classmethod
    async def get_mongo_db(cls) -> AsyncIOMotorDatabase:
        """Get MongoDB database instance."""
        if cls._db is None:
            await cls.init_mongo()
        return cls._db

    @classmethod
    async def close_connections(cls):
        """Close the database connection."""
        if cls._mongo_client:
            cls._mongo_client.close()
            cls._mongo_client = None
            cls._db = None


async def get_db() -> AsyncIOMotorDatabase:
    """Dependency for getting MongoDB database."""
    return await DatabaseConnection.get_mongo_db()
