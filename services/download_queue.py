"""Persistent download queue backed by the ``download_queue`` table."""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import delete, select

from core.config import Settings, get_settings
from db.models import ACTIVE_STATUSES, DownloadStatus, Job, JobOrigin, as_utc, utcnow
from services.mangadex_client import extract_title_id

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10


class DownloadQueueError(Exception):
    """Base exception for queue operations."""
    pass


class InvalidDownloadRequestError(DownloadQueueError):
    """The enqueue request failed validation."""
    pass


class DuplicateJobError(DownloadQueueError):
    """An equivalent job is already queued or running."""

    def __init__(self, source_url: str, existing_id: UUID) -> None:
        super().__init__(f"A job for {source_url} already exists ({existing_id})")
        self.source_url = source_url
        self.existing_id = existing_id


class JobNotFoundError(DownloadQueueError):
    """No job with that id."""
    pass


class IllegalTransitionError(DownloadQueueError):
    """The state machine does not allow this status change."""

    def __init__(self, job_id: UUID, current: DownloadStatus, target: DownloadStatus) -> None:
        super().__init__(f"Job {job_id}: cannot move from {current.value} to {target.value}")
        self.current = current
        self.target = target


def duplicate_statuses(origin: JobOrigin) -> frozenset[DownloadStatus]:
    """Statuses that make a new job for the same URL redundant."""
    if origin == JobOrigin.FOLLOW_LIST:
        return ACTIVE_STATUSES | {DownloadStatus.COMPLETED}
    return ACTIVE_STATUSES


class DownloadQueue:
    """Queue operations. Every mutation is a single-row write."""

    def __init__(self, session_factory: Any, settings: Settings | None = None) -> None:
        self._session_factory = session_factory
        self.settings = settings or get_settings()

    async def enqueue(
        self,
        source_url: str,
        library_path: str | None = None,
        priority: int | None = None,
        *,
        title: str | None = None,
        language: str | None = None,
        origin: JobOrigin = JobOrigin.MANUAL,
        max_retries: int | None = None,
    ) -> Job:
        """
        Validate and persist a new PENDING job.

        Raises:
            InvalidDownloadRequestError: Bad URL, priority or library path.
            DuplicateJobError: An equivalent job is already queued.
        """
        source_url = (source_url or "").strip()
        parsed = urlparse(source_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidDownloadRequestError(f"Invalid URL: {source_url!r}")

        priority = self.settings.default_priority if priority is None else priority
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise InvalidDownloadRequestError(
                f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}"
            )

        if library_path is not None and not Path(library_path).is_dir():
            raise InvalidDownloadRequestError(f"Library path does not exist: {library_path}")

        max_retries = self.settings.default_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise InvalidDownloadRequestError("max_retries must be >= 0")

        existing = await self.find_by_url(source_url, duplicate_statuses(origin))
        if existing is not None:
            raise DuplicateJobError(source_url, existing.id)

        job = Job(
            source_url=source_url,
            title=title or "",
            title_id=extract_title_id(source_url) or source_url,
            library_path=library_path,
            language=language or self.settings.download_language,
            priority=priority,
            origin=origin,
            max_retries=max_retries,
        )
        async with self._session_factory() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)

        logger.info("Queued job %s for %s (priority=%d, origin=%s)", job.id, source_url, priority, origin.value)
        return job

    async def find_by_url(self, source_url: str, statuses: frozenset[DownloadStatus] | set[DownloadStatus]) -> Job | None:
        async with self._session_factory() as session:
            stmt = (
                select(Job)
                .where(Job.source_url == source_url, Job.status.in_(list(statuses)))
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def has_active_job_for_title(self, title_id: str) -> bool:
        async with self._session_factory() as session:
            stmt = (
                select(Job.id)
                .where(Job.title_id == title_id, Job.status.in_(list(ACTIVE_STATUSES)))
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def dequeue_next_pending(self) -> Job | None:
        """Highest priority (lowest number) PENDING job, oldest first on ties."""
        async with self._session_factory() as session:
            stmt = (
                select(Job)
                .where(Job.status == DownloadStatus.PENDING)
                .order_by(Job.priority.asc(), Job.created_at.asc())
                .limit(1)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get(self, job_id: UUID) -> Job | None:
        async with self._session_factory() as session:
            return await session.get(Job, job_id)

    async def list_jobs(
        self,
        statuses: list[DownloadStatus] | None = None,
        library_path: str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        async with self._session_factory() as session:
            stmt = select(Job).order_by(Job.priority.asc(), Job.created_at.asc())
            if statuses:
                stmt = stmt.where(Job.status.in_(statuses))
            if library_path:
                stmt = stmt.where(Job.library_path == library_path)
            result = await session.execute(stmt.limit(limit))
            return list(result.scalars().all())

    async def mark_status(self, job_id: UUID, status: DownloadStatus, **fields: Any) -> Job:
        """
        Move a job to ``status`` and apply extra column updates.

        Raises:
            JobNotFoundError: Unknown job.
            IllegalTransitionError: The transition is not allowed.
        """
        now = utcnow()
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.status.is_terminal or (job.status != status and not job.status.can_transition_to(status)):
                raise IllegalTransitionError(job_id, job.status, status)

            job.status = status
            for key, value in fields.items():
                setattr(job, key, value)
            if job.retry_count > job.max_retries:
                raise DownloadQueueError(
                    f"Job {job_id}: retry_count {job.retry_count} exceeds max_retries {job.max_retries}"
                )

            if status == DownloadStatus.DOWNLOADING and "started_at" not in fields:
                job.started_at = now
            if status.is_terminal or status == DownloadStatus.FAILED:
                job.completed_at = now
            elif status == DownloadStatus.PENDING:
                job.completed_at = None
            job.updated_at = now

            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def update_fields(self, job_id: UUID, **fields: Any) -> Job | None:
        """Update non-status columns of a job that is not terminal."""
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None or job.status.is_terminal:
                return None
            for key, value in fields.items():
                setattr(job, key, value)
            job.updated_at = utcnow()
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job

    async def update_progress(
        self,
        job_id: UUID,
        percent: int,
        current_chapter: int | None = None,
        total_chapters: int | None = None,
    ) -> Job | None:
        fields: dict[str, Any] = {"progress_percent": max(0, min(100, int(percent)))}
        if current_chapter is not None:
            fields["current_chapter"] = current_chapter
        if total_chapters is not None:
            fields["total_chapters"] = total_chapters
        return await self.update_fields(job_id, **fields)

    async def find_failed_ready_for_retry(self, base_interval: timedelta, now: datetime | None = None) -> list[Job]:
        """
        FAILED jobs under their retry ceiling whose backoff has elapsed.

        A job becomes eligible ``(retry_count + 1) * base_interval`` after its
        last modification.
        """
        now = as_utc(now) if now is not None else utcnow()
        async with self._session_factory() as session:
            stmt = (
                select(Job)
                .where(Job.status == DownloadStatus.FAILED, Job.retry_count < Job.max_retries)
                .order_by(Job.updated_at.asc())
            )
            result = await session.execute(stmt)
            jobs = result.scalars().all()

        return [
            job for job in jobs
            if now - as_utc(job.updated_at) >= base_interval * (job.retry_count + 1)
        ]

    async def clear_by_status(self, status: DownloadStatus) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(Job).where(Job.status == status))
            await session.commit()
            count = result.rowcount or 0
        logger.info("Cleared %d %s job(s)", count, status.value)
        return count

    async def delete(self, job_id: UUID) -> bool:
        async with self._session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                return False
            await session.delete(job)
            await session.commit()
        return True

