"""Unit tests for job recovery routines."""

from __future__ import annotations

from typing import Any

import pytest

from db.models import DownloadStatus
from services.download_queue import DownloadQueue
from services.job_recovery import requeue_interrupted_jobs


@pytest.mark.asyncio
async def test_requeue_interrupted_jobs_returns_downloading_jobs_to_pending(
    queue: DownloadQueue, session_factory: Any
) -> None:
    running = await queue.enqueue("https://example.org/a")
    await queue.mark_status(running.id, DownloadStatus.DOWNLOADING, progress_percent=40)
    pending = await queue.enqueue("https://example.org/b")
    failed = await queue.enqueue("https://example.org/c")
    await queue.mark_status(failed.id, DownloadStatus.DOWNLOADING)
    await queue.mark_status(failed.id, DownloadStatus.FAILED, error_message="boom")

    requeued = await requeue_interrupted_jobs(session_factory)

    assert requeued == 1
    job = await queue.get(running.id)
    assert job is not None
    assert job.status == DownloadStatus.PENDING
    assert job.error_message and "Interrupted by API restart" in job.error_message
    assert job.progress_percent == 40

    assert (await queue.get(pending.id)).status == DownloadStatus.PENDING  # type: ignore[union-attr]
    failed_job = await queue.get(failed.id)
    assert failed_job is not None
    assert failed_job.status == DownloadStatus.FAILED
    assert failed_job.error_message == "boom"


@pytest.mark.asyncio
async def test_requeue_interrupted_jobs_with_nothing_to_do(session_factory: Any) -> None:
    assert await requeue_interrupted_jobs(session_factory) == 0
