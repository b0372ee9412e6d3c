"""Read/flag access to scheme bookmarks owned by the bookmark CRUD layer."""
from typing import List
from motor.motor_asyncio import AsyncIOMotorDatabase
from shared.utils import get_utc_now


class BookmarkRepository:
    """Repository for the scheme_bookmarks collection."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.scheme_bookmarks

    async def get_daily_scheme_ids(self, tenant_id: int, is_live: bool, user_id: int, limit: int = 1000) -> List[int]:
        """Schemes the user tracks with daily download enabled."""
        cursor = self.collection.find(
            {
                "tenant_id": tenant_id,
                "is_live": is_live,
                "user_id": user_id,
                "is_active": True,
                "daily_download_enabled": True
            },
            {"scheme_id": 1}
        ).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [doc["scheme_id"] for doc in docs]

    async def get_tracked_scheme_ids(self, tenant_id: int, is_live: bool) -> List[int]:
        """Every scheme bookmarked by any user of the tenant."""
        return await self.collection.distinct(
            "scheme_id",
            {"tenant_id": tenant_id, "is_live": is_live, "is_active": True}
        )

    async def get_historical_completed(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        scheme_ids: List[int]
    ) -> List[int]:
        """Schemes among `scheme_ids` whose historical backfill is already done."""
        if not scheme_ids:
            return []
        return await self.collection.distinct(
            "scheme_id",
            {
                "tenant_id": tenant_id,
                "is_live": is_live,
                "user_id": user_id,
                "scheme_id": {"$in": list(scheme_ids)},
                "is_active": True,
                "historical_download_completed": True
            }
        )

    async def mark_historical_completed(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        scheme_ids: List[int]
    ) -> int:
        """Flag the user's bookmarks so later backfills short-circuit."""
        result = await self.collection.update_many(
            {
                "tenant_id": tenant_id,
                "is_live": is_live,
                "user_id": user_id,
                "scheme_id": {"$in": list(scheme_ids)},
                "is_active": True
            },
            {"$set": {"historical_download_completed": True, "updated_at": get_utc_now()}}
        )
        return result.modified_count
