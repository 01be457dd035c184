"""Unit tests for the persistent download queue."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from db.models import DownloadStatus, Job, JobOrigin
from services.download_queue import (
    DownloadQueue,
    DownloadQueueError,
    DuplicateJobError,
    IllegalTransitionError,
    InvalidDownloadRequestError,
    JobNotFoundError,
)

TITLE_URL = "https://mangadex.org/title/0f1e2d3c-4b5a-4978-8a6b-5c4d3e2f1a0b/foo"


class TestEnqueue:
    """Tests for enqueue validation."""

    @pytest.mark.asyncio
    async def test_enqueue_defaults(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        assert job.status == DownloadStatus.PENDING
        assert job.priority == 5
        assert job.language == "en"
        assert job.origin == JobOrigin.MANUAL
        assert job.title_id == "0f1e2d3c-4b5a-4978-8a6b-5c4d3e2f1a0b"
        assert job.max_retries == 3

    @pytest.mark.asyncio
    async def test_non_mangadex_url_uses_url_as_title_id(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue("https://example.org/gallery/42")

        assert job.title_id == "https://example.org/gallery/42"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["", "not a url", "ftp://example.org/x", "https://"])
    async def test_invalid_url(self, queue: DownloadQueue, url: str) -> None:
        with pytest.raises(InvalidDownloadRequestError):
            await queue.enqueue(url)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [0, 11, -1])
    async def test_priority_out_of_range(self, queue: DownloadQueue, priority: int) -> None:
        with pytest.raises(InvalidDownloadRequestError):
            await queue.enqueue(TITLE_URL, priority=priority)

    @pytest.mark.asyncio
    async def test_library_path_must_exist(self, queue: DownloadQueue, tmp_path: Path) -> None:
        with pytest.raises(InvalidDownloadRequestError):
            await queue.enqueue(TITLE_URL, str(tmp_path / "missing"))

        job = await queue.enqueue(TITLE_URL, str(tmp_path))
        assert job.library_path == str(tmp_path)

    @pytest.mark.asyncio
    async def test_negative_max_retries(self, queue: DownloadQueue) -> None:
        with pytest.raises(InvalidDownloadRequestError):
            await queue.enqueue(TITLE_URL, max_retries=-1)

    @pytest.mark.asyncio
    async def test_duplicate_active_job_rejected(self, queue: DownloadQueue) -> None:
        """Test a second job for a queued URL is refused."""
        first = await queue.enqueue(TITLE_URL)

        with pytest.raises(DuplicateJobError) as exc_info:
            await queue.enqueue(TITLE_URL)

        assert exc_info.value.existing_id == first.id

    @pytest.mark.asyncio
    async def test_stored_timestamps_are_utc(self, queue: DownloadQueue) -> None:
        """Test timestamps survive a database round trip as aware UTC values."""
        job = await queue.enqueue(TITLE_URL)
        running = await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)

        stored = await queue.get(job.id)

        assert stored is not None
        assert stored.created_at.utcoffset() == timedelta(0)
        assert stored.updated_at.utcoffset() == timedelta(0)
        assert running.started_at is not None and running.started_at.utcoffset() == timedelta(0)

    @pytest.mark.asyncio
    async def test_manual_job_allowed_after_completion(self, queue: DownloadQueue) -> None:
        first = await queue.enqueue(TITLE_URL)
        await queue.mark_status(first.id, DownloadStatus.DOWNLOADING)
        await queue.mark_status(first.id, DownloadStatus.COMPLETED)

        second = await queue.enqueue(TITLE_URL)

        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_follow_list_job_not_requeued_after_completion(self, queue: DownloadQueue) -> None:
        """Test follow list imports don't redownload titles that already completed."""
        first = await queue.enqueue(TITLE_URL, origin=JobOrigin.FOLLOW_LIST)
        await queue.mark_status(first.id, DownloadStatus.DOWNLOADING)
        await queue.mark_status(first.id, DownloadStatus.COMPLETED)

        with pytest.raises(DuplicateJobError):
            await queue.enqueue(TITLE_URL, origin=JobOrigin.FOLLOW_LIST)


class TestQueries:
    """Tests for queue queries."""

    @pytest.mark.asyncio
    async def test_dequeue_orders_by_priority_then_age(self, queue: DownloadQueue) -> None:
        low = await queue.enqueue("https://example.org/a", priority=8)
        high_old = await queue.enqueue("https://example.org/b", priority=2)
        await queue.enqueue("https://example.org/c", priority=2)

        nxt = await queue.dequeue_next_pending()
        assert nxt is not None and nxt.id == high_old.id

        listed = await queue.list_jobs()
        assert [j.source_url for j in listed] == [
            "https://example.org/b",
            "https://example.org/c",
            "https://example.org/a",
        ]
        assert listed[-1].id == low.id

    @pytest.mark.asyncio
    async def test_dequeue_ignores_non_pending(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)
        await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)

        assert await queue.dequeue_next_pending() is None

    @pytest.mark.asyncio
    async def test_list_filters(self, queue: DownloadQueue, tmp_path: Path) -> None:
        a = await queue.enqueue("https://example.org/a", str(tmp_path))
        await queue.enqueue("https://example.org/b")
        await queue.mark_status(a.id, DownloadStatus.CANCELLED)

        assert [j.id for j in await queue.list_jobs([DownloadStatus.CANCELLED])] == [a.id]
        assert [j.id for j in await queue.list_jobs(library_path=str(tmp_path))] == [a.id]
        assert len(await queue.list_jobs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_has_active_job_for_title(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        assert await queue.has_active_job_for_title(job.title_id)

        await queue.mark_status(job.id, DownloadStatus.CANCELLED)
        assert not await queue.has_active_job_for_title(job.title_id)


class TestMarkStatus:
    """Tests for state transitions."""

    @pytest.mark.asyncio
    async def test_lifecycle_timestamps(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        running = await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)
        assert running.started_at is not None
        assert running.completed_at is None

        done = await queue.mark_status(job.id, DownloadStatus.COMPLETED, progress_percent=100)
        assert done.completed_at is not None
        assert done.progress_percent == 100

    @pytest.mark.asyncio
    async def test_pending_to_completed_is_illegal(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        with pytest.raises(IllegalTransitionError):
            await queue.mark_status(job.id, DownloadStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_terminal_jobs_are_immutable(self, queue: DownloadQueue) -> None:
        """Test nothing moves a job out of a terminal status."""
        job = await queue.enqueue(TITLE_URL)
        await queue.mark_status(job.id, DownloadStatus.CANCELLED)

        for target in DownloadStatus:
            with pytest.raises(IllegalTransitionError):
                await queue.mark_status(job.id, target)

        assert await queue.update_fields(job.id, title="changed") is None
        assert (await queue.get(job.id)).title == ""  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_retry_count_cannot_exceed_max(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL, max_retries=1)
        await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)
        await queue.mark_status(job.id, DownloadStatus.FAILED)

        with pytest.raises(DownloadQueueError):
            await queue.mark_status(job.id, DownloadStatus.PENDING, retry_count=2)

        assert (await queue.get(job.id)).status == DownloadStatus.FAILED  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_failed_back_to_pending_clears_completion(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)
        await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)
        failed = await queue.mark_status(job.id, DownloadStatus.FAILED, error_message="boom")
        assert failed.completed_at is not None

        requeued = await queue.mark_status(job.id, DownloadStatus.PENDING, retry_count=1, error_message=None)

        assert requeued.completed_at is None
        assert requeued.retry_count == 1
        assert requeued.error_message is None

    @pytest.mark.asyncio
    async def test_unknown_job(self, queue: DownloadQueue) -> None:
        with pytest.raises(JobNotFoundError):
            await queue.mark_status(uuid4(), DownloadStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_update_progress_is_clamped(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        updated = await queue.update_progress(job.id, 150, 3, 4)

        assert updated is not None
        assert updated.progress_percent == 100
        assert updated.current_chapter == 3
        assert updated.total_chapters == 4


class TestRetryQuery:
    """Tests for find_failed_ready_for_retry."""

    async def _failed_job(self, queue: DownloadQueue, url: str, retry_count: int = 0, **kwargs: Any) -> Job:
        job = await queue.enqueue(url, **kwargs)
        await queue.mark_status(job.id, DownloadStatus.DOWNLOADING)
        return await queue.mark_status(job.id, DownloadStatus.FAILED, retry_count=retry_count)

    @pytest.mark.asyncio
    async def test_linear_backoff(self, queue: DownloadQueue) -> None:
        """Test a job waits (retry_count + 1) * base before it is eligible."""
        first = await self._failed_job(queue, "https://example.org/a", retry_count=0)
        second = await self._failed_job(queue, "https://example.org/b", retry_count=1)
        base = timedelta(minutes=5)

        soon = first.updated_at + timedelta(minutes=6)
        assert [j.id for j in await queue.find_failed_ready_for_retry(base, soon)] == [first.id]

        later = second.updated_at + timedelta(minutes=11)
        ids = {j.id for j in await queue.find_failed_ready_for_retry(base, later)}
        assert ids == {first.id, second.id}

    @pytest.mark.asyncio
    async def test_exhausted_jobs_are_excluded(self, queue: DownloadQueue) -> None:
        await self._failed_job(queue, "https://example.org/a", retry_count=2, max_retries=2)

        far_future = datetime.now(timezone.utc) + timedelta(days=1)
        assert await queue.find_failed_ready_for_retry(timedelta(0), far_future) == []

    @pytest.mark.asyncio
    async def test_naive_reference_time_is_treated_as_utc(self, queue: DownloadQueue) -> None:
        job = await self._failed_job(queue, "https://example.org/a")
        naive_later = (job.updated_at + timedelta(minutes=6)).replace(tzinfo=None)

        ready = await queue.find_failed_ready_for_retry(timedelta(minutes=5), naive_later)

        assert [j.id for j in ready] == [job.id]


class TestDelete:
    """Tests for deletion."""

    @pytest.mark.asyncio
    async def test_clear_by_status(self, queue: DownloadQueue) -> None:
        a = await queue.enqueue("https://example.org/a")
        b = await queue.enqueue("https://example.org/b")
        await queue.enqueue("https://example.org/c")
        await queue.mark_status(a.id, DownloadStatus.CANCELLED)
        await queue.mark_status(b.id, DownloadStatus.CANCELLED)

        assert await queue.clear_by_status(DownloadStatus.CANCELLED) == 2
        assert len(await queue.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_delete(self, queue: DownloadQueue) -> None:
        job = await queue.enqueue(TITLE_URL)

        assert await queue.delete(job.id)
        assert not await queue.delete(job.id)
        assert await queue.get(job.id) is None
