"""Download orchestrator tests."""
import asyncio
import logging
import pytest
from datetime import date, timedelta
from unittest.mock import AsyncMock

from conftest import make_fetch_result, make_record
from database.repositories.job_repo import JobStatus, JobType
from fetcher.amfi_client import FetchErrorKind
from orchestrator.progress import SequentialStatus
from shared.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError


class TestTriggerDaily:
    """Tests for daily downloads."""

    @pytest.mark.asyncio
    async def test_daily_download_completes(self, orchestrator, job_repo, nav_repo):
        """Test the pipeline fetches, filters, upserts and completes."""
        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        job = job_repo.jobs[result.job_id]
        assert job["status"] == JobStatus.COMPLETED
        assert job["result_summary"]["total_records_inserted"] == 2
        assert job["result_summary"]["failed_downloads"] == 0

        saved = nav_repo.upsert_nav_records.await_args.args[2]
        assert sorted(record.scheme_code for record in saved) == ["100001", "100002"]

        snapshot = orchestrator.get_download_progress(result.job_id)
        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.progress_percentage == 100
        assert orchestrator.get_download_locks() == []

    @pytest.mark.asyncio
    async def test_second_trigger_returns_existing_job(self, orchestrator, job_repo):
        """Test a held lock returns the running job instead of a duplicate."""
        first = await orchestrator.trigger_daily(1, True, 7)
        second = await orchestrator.trigger_daily(1, True, 7)

        assert second.already_in_progress
        assert second.job_id == first.job_id
        assert len(job_repo.jobs) == 1
        await orchestrator.wait_for_tasks(timeout=5)

    @pytest.mark.asyncio
    async def test_racing_triggers_create_one_job(self, orchestrator, job_repo):
        """Test concurrent triggers for one key cannot both acquire the lock."""
        results = await asyncio.gather(
            orchestrator.trigger_daily(1, True, 7),
            orchestrator.trigger_daily(1, True, 7)
        )

        assert len({result.job_id for result in results}) == 1
        assert len(job_repo.jobs) == 1
        await orchestrator.wait_for_tasks(timeout=5)

    @pytest.mark.asyncio
    async def test_environments_do_not_share_locks(self, orchestrator, job_repo):
        live = await orchestrator.trigger_daily(1, True, 7)
        test = await orchestrator.trigger_daily(1, False, 7)

        assert live.job_id != test.job_id
        assert not test.already_in_progress
        await orchestrator.wait_for_tasks(timeout=5)

    @pytest.mark.asyncio
    async def test_no_bookmarks(self, orchestrator, bookmark_repo):
        bookmark_repo.get_daily_scheme_ids = AsyncMock(return_value=[])

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.trigger_daily(1, True, 7)
        assert exc_info.value.code == ErrorCodes.NO_SCHEMES_CONFIGURED

    @pytest.mark.asyncio
    async def test_all_data_present(self, orchestrator, nav_repo, job_repo):
        """Test no job is created when today's data already exists."""
        nav_repo.exists_for_date = AsyncMock(return_value={1: True, 2: True})

        result = await orchestrator.trigger_daily(1, True, 7)

        assert result.job_id is None
        assert result.already_exists
        assert job_repo.jobs == {}

    @pytest.mark.asyncio
    async def test_only_missing_schemes_are_downloaded(self, orchestrator, nav_repo, job_repo):
        nav_repo.exists_for_date = AsyncMock(return_value={1: True, 2: False})

        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        assert job_repo.jobs[result.job_id]["scheme_ids"] == [2]

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_job_failed(self, orchestrator, fetcher, job_repo):
        """Test a failed fetch fails the job and releases the lock."""
        fetcher.fetch_daily = AsyncMock(return_value=make_fetch_result(
            success=False, error="Request timeout after 30s", error_kind=FetchErrorKind.TIMEOUT
        ))

        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        job = job_repo.jobs[result.job_id]
        assert job["status"] == JobStatus.FAILED
        assert "Request timeout" in job["error_details"]
        assert orchestrator.get_download_progress(result.job_id).status == JobStatus.FAILED
        assert orchestrator.get_download_locks() == []

    @pytest.mark.asyncio
    async def test_upsert_errors_in_summary(self, orchestrator, nav_repo, job_repo):
        nav_repo.upsert_nav_records = AsyncMock(return_value={
            "inserted": 1,
            "updated": 0,
            "errors": [{"scheme_code": "100002", "error": "Scheme not found"}]
        })

        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        summary = job_repo.jobs[result.job_id]["result_summary"]
        assert summary["successful_downloads"] == 1
        assert summary["failed_downloads"] == 1
        assert summary["schemes_with_errors"][0]["scheme_id"] == 2


class TestTriggerWeekly:
    """Tests for weekly downloads."""

    @pytest.mark.asyncio
    async def test_weekly_uses_untracked_schemes(self, orchestrator, nav_repo, job_repo):
        result = await orchestrator.trigger_weekly(1, True, 0)
        await orchestrator.wait_for_tasks(timeout=5)

        nav_repo.get_active_scheme_ids.assert_awaited_once_with(1, True, exclude=[1, 2], limit=100)
        assert job_repo.jobs[result.job_id]["job_type"] == JobType.WEEKLY
        assert job_repo.jobs[result.job_id]["scheme_ids"] == [5, 6]

    @pytest.mark.asyncio
    async def test_weekly_without_untracked_schemes(self, orchestrator, nav_repo):
        nav_repo.get_active_scheme_ids = AsyncMock(return_value=[])

        result = await orchestrator.trigger_weekly(1, True, 0)

        assert result.job_id is None


class TestTriggerHistorical:
    """Tests for historical downloads."""

    @pytest.mark.asyncio
    async def test_short_range_is_single_job(self, orchestrator, job_repo, fetcher, bookmark_repo):
        """Test a range within one window creates one job and marks the backfill done."""
        end = date.today() - timedelta(days=1)
        start = end - timedelta(days=29)

        result = await orchestrator.trigger_historical(1, True, 7, [2, 1], start, end)
        await orchestrator.wait_for_tasks(timeout=5)

        assert result.total_chunks == 1
        assert len(job_repo.jobs) == 1
        assert job_repo.jobs[result.job_id]["status"] == JobStatus.COMPLETED
        fetcher.fetch_historical.assert_awaited_once()
        assert fetcher.fetch_historical.await_args.args[:2] == (start, end)
        bookmark_repo.mark_historical_completed.assert_awaited_once_with(1, True, 7, [1, 2])

    @pytest.mark.asyncio
    async def test_long_range_runs_chunks_in_order(self, orchestrator, job_repo, fetcher, bookmark_repo):
        """Test a 200-day request becomes three ordered chunks."""
        end = date.today() - timedelta(days=1)
        start = end - timedelta(days=199)

        result = await orchestrator.trigger_historical(1, True, 7, [1, 2], start, end)
        await orchestrator.wait_for_tasks(timeout=5)

        assert [chunk.day_count for chunk in result.chunks] == [90, 90, 20]
        parent = job_repo.jobs[result.job_id]
        children = await job_repo.list_children(result.job_id)

        assert job_repo.creation_order[0] == result.job_id
        assert [child["chunk_number"] for child in children] == [1, 2, 3]
        for chunk, child in zip(result.chunks, children):
            assert child["start_date"].date() == chunk.start_date
            assert child["end_date"].date() == chunk.end_date

        fetched = [call.args[:2] for call in fetcher.fetch_historical.await_args_list]
        assert fetched == [(chunk.start_date, chunk.end_date) for chunk in result.chunks]
        assert parent["status"] == JobStatus.COMPLETED
        assert not parent["result_summary"]["completed_with_errors"]
        assert orchestrator.get_sequential_progress(result.job_id).overall_status == SequentialStatus.COMPLETED
        bookmark_repo.mark_historical_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_later_chunks(self, orchestrator, job_repo, fetcher):
        """Test chunk 2 failing still runs chunk 3 and completes the parent with errors."""
        records = [make_record("100001"), make_record("100002")]
        fetcher.fetch_historical = AsyncMock(side_effect=[
            make_fetch_result(records, source="historical"),
            make_fetch_result(success=False, error="Network error: reset", error_kind=FetchErrorKind.NETWORK),
            make_fetch_result(records, source="historical"),
        ])
        end = date.today() - timedelta(days=1)
        start = end - timedelta(days=199)

        result = await orchestrator.trigger_historical(1, True, 7, [1, 2], start, end)
        await orchestrator.wait_for_tasks(timeout=5)

        children = await job_repo.list_children(result.job_id)
        assert [child["status"] for child in children] == [
            JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.COMPLETED
        ]
        assert fetcher.fetch_historical.await_count == 3

        parent = job_repo.jobs[result.job_id]
        assert parent["status"] == JobStatus.COMPLETED
        assert parent["result_summary"]["completed_with_errors"]
        assert parent["result_summary"]["failed_chunks"] == 1
        assert parent["result_summary"]["chunk_errors"][0]["chunk_number"] == 2

        progress = orchestrator.get_sequential_progress(result.job_id)
        assert progress.overall_status == SequentialStatus.COMPLETED_WITH_ERRORS
        assert progress.completed_chunks == 3
        assert len(progress.errors) == 1

    @pytest.mark.asyncio
    async def test_already_completed_backfill(self, orchestrator, bookmark_repo, job_repo):
        bookmark_repo.get_historical_completed = AsyncMock(return_value=[2])
        end = date.today() - timedelta(days=1)

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.trigger_historical(1, True, 7, [1, 2], end - timedelta(days=10), end)

        assert exc_info.value.code == ErrorCodes.HISTORICAL_DOWNLOAD_COMPLETED
        assert job_repo.jobs == {}

    @pytest.mark.asyncio
    async def test_future_end_date(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.trigger_historical(1, True, 7, [1], date.today(), date.today() + timedelta(days=3))

    @pytest.mark.asyncio
    async def test_inverted_range(self, orchestrator):
        end = date.today() - timedelta(days=30)
        with pytest.raises(ValidationError):
            await orchestrator.trigger_historical(1, True, 7, [1], end, end - timedelta(days=5))

    @pytest.mark.asyncio
    async def test_lock_scope_ignores_scheme_order(self, orchestrator, job_repo):
        end = date.today() - timedelta(days=1)
        start = end - timedelta(days=10)

        first = await orchestrator.trigger_historical(1, True, 7, [1, 2], start, end)
        second = await orchestrator.trigger_historical(1, True, 7, [2, 1], start, end)

        assert second.already_in_progress
        assert second.job_id == first.job_id
        await orchestrator.wait_for_tasks(timeout=5)


class TestCancelDownload:
    """Tests for cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_while_fetching(self, orchestrator, job_repo, fetcher, nav_repo):
        """Test cancelling mid-fetch discards the fetched data."""
        gate = asyncio.Event()
        started = asyncio.Event()

        async def slow_fetch(options=None):
            started.set()
            await gate.wait()
            return make_fetch_result([make_record("100001")])

        fetcher.fetch_daily = AsyncMock(side_effect=slow_fetch)

        result = await orchestrator.trigger_daily(1, True, 7)
        await started.wait()

        cancelled = await orchestrator.cancel_download(result.job_id, 7)

        assert cancelled["status"] == JobStatus.CANCELLED
        assert orchestrator.get_download_locks() == []
        assert orchestrator.get_download_progress(result.job_id).status == JobStatus.CANCELLED

        gate.set()
        await orchestrator.wait_for_tasks(timeout=5)

        assert job_repo.jobs[result.job_id]["status"] == JobStatus.CANCELLED
        nav_repo.upsert_nav_records.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_parent_cancels_children(self, orchestrator, job_repo, fetcher):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def slow_fetch(start_date, end_date, options=None):
            started.set()
            await gate.wait()
            return make_fetch_result([make_record("100001")], source="historical")

        fetcher.fetch_historical = AsyncMock(side_effect=slow_fetch)
        end = date.today() - timedelta(days=1)

        result = await orchestrator.trigger_historical(1, True, 7, [1], end - timedelta(days=199), end)
        await started.wait()
        await orchestrator.cancel_download(result.job_id, 7)
        gate.set()
        await orchestrator.wait_for_tasks(timeout=5)

        children = await job_repo.list_children(result.job_id)
        assert all(child["status"] == JobStatus.CANCELLED for child in children)
        assert fetcher.fetch_historical.await_count == 1
        assert orchestrator.get_sequential_progress(result.job_id).overall_status == SequentialStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_running_chunk_continues_with_remaining_chunks(self, orchestrator, job_repo, fetcher):
        """Test cancelling one chunk lets the parent finish the others and reach a terminal state."""
        gate = asyncio.Event()
        started = asyncio.Event()

        async def slow_fetch(start_date, end_date, options=None):
            started.set()
            await gate.wait()
            return make_fetch_result([make_record("100001")], source="historical")

        fetcher.fetch_historical = AsyncMock(side_effect=slow_fetch)
        end = date.today() - timedelta(days=1)

        result = await orchestrator.trigger_historical(1, True, 7, [1], end - timedelta(days=199), end)
        await started.wait()

        children = await job_repo.list_children(result.job_id)
        await orchestrator.cancel_download(children[0]["_id"], 7)
        gate.set()
        assert await orchestrator.wait_for_tasks(timeout=5)

        parent = job_repo.jobs[result.job_id]
        statuses = [child["status"] for child in await job_repo.list_children(result.job_id)]
        assert parent["status"] == JobStatus.COMPLETED
        assert parent["result_summary"]["failed_chunks"] == 1
        assert parent["result_summary"]["chunk_errors"][0]["chunk_number"] == 1
        assert statuses == [JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.COMPLETED]

        sequential = orchestrator.get_sequential_progress(result.job_id)
        assert sequential.overall_status == SequentialStatus.COMPLETED_WITH_ERRORS
        assert sequential.completed_chunks == 3
        assert orchestrator.get_download_progress(result.job_id).status == JobStatus.COMPLETED
        assert orchestrator.get_download_locks() == []

    @pytest.mark.asyncio
    async def test_cancel_pending_chunk_is_skipped(self, orchestrator, job_repo, fetcher):
        gate = asyncio.Event()
        started = asyncio.Event()

        async def slow_fetch(start_date, end_date, options=None):
            started.set()
            await gate.wait()
            return make_fetch_result([make_record("100001")], source="historical")

        fetcher.fetch_historical = AsyncMock(side_effect=slow_fetch)
        end = date.today() - timedelta(days=1)

        result = await orchestrator.trigger_historical(1, True, 7, [1], end - timedelta(days=199), end)
        await started.wait()

        children = await job_repo.list_children(result.job_id)
        await orchestrator.cancel_download(children[2]["_id"], 7)
        gate.set()
        assert await orchestrator.wait_for_tasks(timeout=5)

        statuses = [child["status"] for child in await job_repo.list_children(result.job_id)]
        assert statuses == [JobStatus.COMPLETED, JobStatus.COMPLETED, JobStatus.CANCELLED]
        assert fetcher.fetch_historical.await_count == 2
        assert job_repo.jobs[result.job_id]["status"] == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_is_scoped_to_tenant(self, orchestrator, job_repo):
        job = await job_repo.create_job(2, True, 9, JobType.DAILY, [1])

        with pytest.raises(NotFoundError):
            await orchestrator.cancel_download(job["_id"], 7, tenant_id=1)

        assert job_repo.jobs[job["_id"]]["status"] == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.cancel_download("job_missing", 7)

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, orchestrator):
        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        with pytest.raises(ConflictError):
            await orchestrator.cancel_download(result.job_id, 7)


class TestCrashContainment:
    """Tests for the background error boundary."""

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, orchestrator, nav_repo, job_repo):
        """Test a crash inside the pipeline is persisted, not raised to the caller."""
        nav_repo.get_scheme_codes = AsyncMock(side_effect=RuntimeError("boom"))

        result = await orchestrator.trigger_daily(1, True, 7)
        await orchestrator.wait_for_tasks(timeout=5)

        job = job_repo.jobs[result.job_id]
        assert job["status"] == JobStatus.FAILED
        assert job["error_details"] == "boom"
        assert orchestrator.get_download_locks() == []

        again = await orchestrator.trigger_daily(1, True, 7)
        assert not again.already_in_progress
        await orchestrator.wait_for_tasks(timeout=5)

    @pytest.mark.asyncio
    async def test_failed_job_is_recorded_once(self, orchestrator, fetcher, job_repo, caplog):
        fetcher.fetch_daily = AsyncMock(return_value=make_fetch_result(
            success=False, error="HTTP 503", error_kind=FetchErrorKind.NETWORK
        ))
        original_update = job_repo.update_job
        failure_writes = []

        async def tracking_update(job_id, status=None, **kwargs):
            if status == JobStatus.FAILED:
                failure_writes.append(job_id)
            return await original_update(job_id, status=status, **kwargs)

        job_repo.update_job = tracking_update

        with caplog.at_level(logging.ERROR, logger="orchestrator.download_service"):
            result = await orchestrator.trigger_daily(1, True, 7)
            await orchestrator.wait_for_tasks(timeout=5)

        assert job_repo.jobs[result.job_id]["status"] == JobStatus.FAILED
        assert failure_writes == [result.job_id]
        errors = [
            record for record in caplog.records
            if record.levelno >= logging.ERROR and result.job_id in record.getMessage()
        ]
        assert len(errors) == 1


class TestAdministration:
    """Tests for lock administration and shutdown."""

    @pytest.mark.asyncio
    async def test_clear_all_locks(self, orchestrator, fetcher):
        gate = asyncio.Event()

        async def slow_fetch(options=None):
            await gate.wait()
            return make_fetch_result([])

        fetcher.fetch_daily = AsyncMock(side_effect=slow_fetch)
        await orchestrator.trigger_daily(1, True, 7)

        assert len(orchestrator.get_download_locks()) == 1
        assert orchestrator.clear_all_locks() == 1
        assert orchestrator.get_download_locks() == []

        gate.set()
        await orchestrator.wait_for_tasks(timeout=5)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_outstanding_tasks(self, orchestrator, fetcher, job_repo):
        async def hang(options=None):
            await asyncio.Event().wait()

        fetcher.fetch_daily = AsyncMock(side_effect=hang)
        result = await orchestrator.trigger_daily(1, True, 7)
        await asyncio.sleep(0)

        await orchestrator.shutdown(timeout=0.05)

        assert job_repo.jobs[result.job_id]["status"] == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_shutdown_fails_unfinished_chunks(self, orchestrator, fetcher, job_repo):
        started = asyncio.Event()

        async def hang(start_date, end_date, options=None):
            started.set()
            await asyncio.Event().wait()

        fetcher.fetch_historical = AsyncMock(side_effect=hang)
        end = date.today() - timedelta(days=1)
        result = await orchestrator.trigger_historical(1, True, 7, [1], end - timedelta(days=199), end)
        await started.wait()

        await orchestrator.shutdown(timeout=0.05)

        assert job_repo.jobs[result.job_id]["status"] == JobStatus.FAILED
        children = await job_repo.list_children(result.job_id)
        assert [child["status"] for child in children] == [JobStatus.FAILED] * 3
        assert orchestrator.get_sequential_progress(result.job_id).overall_status == SequentialStatus.FAILED

    @pytest.mark.asyncio
    async def test_handle_callback_changes_nothing(self, orchestrator, job_repo):
        await orchestrator.handle_callback({"job_id": "job_x", "execution_id": "1", "status": "success"})
        assert job_repo.jobs == {}
