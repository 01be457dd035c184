"""Job recovery routines for process restarts."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from db.models import DownloadStatus, Job, utcnow
from db.session import async_session_maker


async def requeue_interrupted_jobs(session_factory: Any = None) -> int:
    """
    Return DOWNLOADING jobs to PENDING.

    Jobs run in-memory inside the engine. A job that was DOWNLOADING when the
    process died has no live worker, so it goes back to the queue. Chapters it
    already finished are in the history store and won't be fetched again.
    """
    now = utcnow()
    requeued = 0

    async with (session_factory or async_session_maker)() as session:
        stmt = select(Job).where(Job.status == DownloadStatus.DOWNLOADING)
        res = await session.execute(stmt)
        jobs = res.scalars().all()

        for job in jobs:
            job.status = DownloadStatus.PENDING
            job.error_message = "Interrupted by API restart; resuming from the last finished chapter."
            job.updated_at = now
            session.add(job)
            requeued += 1

        await session.commit()

    return requeued
