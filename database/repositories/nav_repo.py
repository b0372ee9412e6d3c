"""NAV data repository: price upserts and scheme catalogue lookups."""
import logging
from datetime import date
from typing import Dict, Iterable, List, Any
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import UpdateOne
from pymongo.errors import BulkWriteError, PyMongoError
from fetcher.parser import NavRecord
from shared.errors import PersistenceError
from shared.utils import get_utc_now, to_datetime

logger = logging.getLogger(__name__)


class NavRepository:
    """Repository for the nav_data and scheme_details collections."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.nav_data = db.nav_data
        self.schemes = db.scheme_details

    async def exists_for_date(
        self,
        tenant_id: int,
        is_live: bool,
        scheme_ids: List[int],
        nav_date: date
    ) -> Dict[int, bool]:
        """Report, per scheme, whether a NAV row already exists for `nav_date`."""
        if not scheme_ids:
            return {}

        present = await self.nav_data.distinct("scheme_id", {
            "tenant_id": tenant_id,
            "is_live": is_live,
            "scheme_id": {"$in": list(scheme_ids)},
            "nav_date": to_datetime(nav_date)
        })
        present = set(present)
        return {scheme_id: scheme_id in present for scheme_id in scheme_ids}

    async def get_scheme_codes(self, tenant_id: int, is_live: bool, scheme_ids: Iterable[int]) -> Dict[int, str]:
        """Map active scheme IDs to their AMFI scheme codes."""
        scheme_ids = list(scheme_ids)
        if not scheme_ids:
            return {}
        cursor = self.schemes.find(
            {"tenant_id": tenant_id, "is_live": is_live, "_id": {"$in": scheme_ids}, "is_active": True},
            {"scheme_code": 1}
        )
        docs = await cursor.to_list(length=len(scheme_ids))
        return {doc["_id"]: doc["scheme_code"] for doc in docs}

    async def get_scheme_ids_by_codes(self, tenant_id: int, is_live: bool, scheme_codes: Iterable[str]) -> Dict[str, int]:
        """Map AMFI scheme codes to active scheme IDs."""
        scheme_codes = list(set(scheme_codes))
        if not scheme_codes:
            return {}
        cursor = self.schemes.find(
            {"tenant_id": tenant_id, "is_live": is_live, "scheme_code": {"$in": scheme_codes}, "is_active": True},
            {"scheme_code": 1}
        )
        docs = await cursor.to_list(length=len(scheme_codes))
        return {doc["scheme_code"]: doc["_id"] for doc in docs}

    async def get_active_scheme_ids(
        self,
        tenant_id: int,
        is_live: bool,
        exclude: Iterable[int] = (),
        limit: int = 100
    ) -> List[int]:
        """Active schemes ordered by name, skipping `exclude`."""
        cursor = self.schemes.find(
            {"tenant_id": tenant_id, "is_live": is_live, "is_active": True, "_id": {"$nin": list(exclude)}},
            {"_id": 1}
        ).sort("scheme_name", 1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [doc["_id"] for doc in docs]

    async def upsert_nav_records(
        self,
        tenant_id: int,
        is_live: bool,
        records: List[NavRecord],
        data_source: str
    ) -> Dict[str, Any]:
        """
        Insert or update NAV rows keyed by (tenant, scheme, date, environment).

        Returns insert/update counts and a per-record error list; a failing
        record does not abort the rest of the batch.
        """
        try:
            scheme_map = await self.get_scheme_ids_by_codes(
                tenant_id, is_live, (record.scheme_code for record in records)
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to resolve scheme codes: {e}") from e

        inserted = 0
        updated = 0
        errors: List[Dict[str, str]] = []
        operations: List[UpdateOne] = []
        batch: List[NavRecord] = []
        now = get_utc_now()

        for record in records:
            scheme_id = scheme_map.get(record.scheme_code)
            if scheme_id is None:
                errors.append({"scheme_code": record.scheme_code, "error": "Scheme not found"})
                continue

            key = {
                "tenant_id": tenant_id,
                "scheme_id": scheme_id,
                "nav_date": to_datetime(record.nav_date),
                "is_live": is_live
            }
            operations.append(UpdateOne(
                key,
                {
                    "$set": {
                        "scheme_code": record.scheme_code,
                        "nav_value": record.nav_value,
                        "data_source": data_source,
                        "updated_at": now
                    },
                    "$setOnInsert": {"created_at": now}
                },
                upsert=True
            ))
            batch.append(record)

        if operations:
            try:
                result = await self.nav_data.bulk_write(operations, ordered=False)
                inserted = result.upserted_count
                updated = result.matched_count
            except BulkWriteError as e:
                # unordered: the other operations were still applied
                inserted = e.details.get("nUpserted", 0)
                updated = e.details.get("nMatched", 0)
                for write_error in e.details.get("writeErrors", []):
                    errors.append({
                        "scheme_code": batch[write_error["index"]].scheme_code,
                        "error": write_error.get("errmsg", "Write failed")
                    })
            except PyMongoError as e:
                logger.error(f"NAV bulk upsert for tenant {tenant_id} failed: {e}")
                errors.extend({"scheme_code": record.scheme_code, "error": str(e)} for record in batch)

        logger.info(
            f"NAV upsert for tenant {tenant_id}: {len(records)} records, "
            f"{inserted} inserted, {updated} updated, {len(errors)} errors"
        )
        return {"inserted": inserted, "updated": updated, "errors": errors}
