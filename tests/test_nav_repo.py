"""NAV repository tests."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from pymongo import UpdateOne
from pymongo.errors import BulkWriteError, ServerSelectionTimeoutError

from conftest import make_record
from database.repositories.nav_repo import NavRepository


@pytest.fixture
def mock_db():
    """Create a mock database with two known schemes."""
    db = MagicMock()
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=[
        {"_id": 1, "scheme_code": "100001"},
        {"_id": 2, "scheme_code": "100002"}
    ])
    db.scheme_details.find = MagicMock(return_value=cursor)
    db.nav_data.bulk_write = AsyncMock(return_value=MagicMock(upserted_count=1, matched_count=1))
    return db


class TestUpsertNavRecords:
    """Tests for NavRepository.upsert_nav_records."""

    @pytest.mark.asyncio
    async def test_single_bulk_round_trip(self, mock_db):
        """Test every known record goes out in one unordered bulk write."""
        repo = NavRepository(mock_db)
        records = [make_record("100001"), make_record("100002"), make_record("999999")]

        result = await repo.upsert_nav_records(1, True, records, "daily")

        mock_db.nav_data.bulk_write.assert_awaited_once()
        operations = mock_db.nav_data.bulk_write.await_args.args[0]
        assert len(operations) == 2
        assert all(isinstance(operation, UpdateOne) for operation in operations)
        assert mock_db.nav_data.bulk_write.await_args.kwargs == {"ordered": False}

        assert result["inserted"] == 1
        assert result["updated"] == 1
        assert result["errors"] == [{"scheme_code": "999999", "error": "Scheme not found"}]

    @pytest.mark.asyncio
    async def test_write_errors_map_to_records(self, mock_db):
        mock_db.nav_data.bulk_write = AsyncMock(side_effect=BulkWriteError({
            "writeErrors": [{"index": 1, "code": 11000, "errmsg": "duplicate key"}],
            "nUpserted": 1,
            "nMatched": 0
        }))
        repo = NavRepository(mock_db)

        result = await repo.upsert_nav_records(1, True, [make_record("100001"), make_record("100002")], "daily")

        assert result["inserted"] == 1
        assert result["updated"] == 0
        assert result["errors"] == [{"scheme_code": "100002", "error": "duplicate key"}]

    @pytest.mark.asyncio
    async def test_failed_batch_reports_every_record(self, mock_db):
        mock_db.nav_data.bulk_write = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
        repo = NavRepository(mock_db)

        result = await repo.upsert_nav_records(1, True, [make_record("100001"), make_record("100002")], "daily")

        assert result["inserted"] == 0
        assert [error["scheme_code"] for error in result["errors"]] == ["100001", "100002"]

    @pytest.mark.asyncio
    async def test_no_known_schemes_skips_write(self, mock_db):
        repo = NavRepository(mock_db)

        result = await repo.upsert_nav_records(1, True, [make_record("999999")], "daily")

        mock_db.nav_data.bulk_write.assert_not_awaited()
        assert result["inserted"] == 0
