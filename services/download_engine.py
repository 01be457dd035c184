"""Download execution engine: queue scheduler, job executor and retry loop."""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from core.config import Settings, get_settings
from db.models import ChapterRecord, ChapterSource, DownloadStatus, Job
from services.archive_metadata import (
    ArchiveMetadataError,
    ComicInfo,
    build_archive_filename,
    chapter_number_text,
    finalize_archive,
    sanitize_filename,
)
from services.chapter_history import ChapterHistoryStore
from services.download_queue import (
    DownloadQueue,
    DownloadQueueError,
    IllegalTransitionError,
    InvalidDownloadRequestError,
    JobNotFoundError,
)
from services.mangadex_client import (
    MangaDexClient,
    RemoteApiError,
    RemoteChapter,
    RemoteTransientError,
    extract_title_id,
)
from services.process_runner import ProcessRunner, ProgressEvent
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ProgressUpdate:
    """Snapshot of a job's progress delivered to subscribers."""

    job_id: UUID
    title: str
    status: DownloadStatus
    percent: int = 0
    current_chapter: int = 0
    total_chapters: int = 0
    error: str | None = None
    message: str | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "job_id": str(self.job_id),
            "title": self.title,
            "status": self.status.value,
            "percent": self.percent,
            "current_chapter": self.current_chapter,
            "total_chapters": self.total_chapters,
            "error": self.error,
            "message": self.message,
        }

    @classmethod
    def from_job(cls, job: Job, message: str | None = None) -> "ProgressUpdate":
        return cls(
            job_id=job.id,
            title=job.title,
            status=job.status,
            percent=job.progress_percent,
            current_chapter=job.current_chapter,
            total_chapters=job.total_chapters,
            error=job.error_message,
            message=message,
        )


ProgressSubscriber = Callable[[ProgressUpdate], Awaitable[None]]
RescanHook = Callable[[Job], Awaitable[None]]


class JobFailure(Exception):
    """A job attempt failed; ``permanent`` failures skip automatic retries."""

    def __init__(self, message: str, permanent: bool = False) -> None:
        super().__init__(message)
        self.permanent = permanent


@dataclass
class ActiveJobHandle:
    """In-memory handle of a job that has a worker."""

    job_id: UUID
    task: asyncio.Task[None] | None = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ActiveJobRegistry:
    """
    Jobs that currently own a worker task.

    Created empty with the engine and drained on shutdown. The engine admits a
    job only when the registry is empty.
    """

    def __init__(self) -> None:
        self._handles: dict[UUID, ActiveJobHandle] = {}

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    @property
    def is_empty(self) -> bool:
        return not self._handles

    def job_ids(self) -> list[UUID]:
        return list(self._handles)

    def add(self, handle: ActiveJobHandle) -> None:
        if handle.job_id in self._handles:
            raise ValueError(f"Job {handle.job_id} is already active")
        self._handles[handle.job_id] = handle

    def get(self, job_id: UUID) -> ActiveJobHandle | None:
        return self._handles.get(job_id)

    def remove(self, job_id: UUID) -> ActiveJobHandle | None:
        return self._handles.pop(job_id, None)

    def tasks(self) -> list[asyncio.Task[None]]:
        return [h.task for h in self._handles.values() if h.task is not None]

    async def drain(self, runner: ProcessRunner, timeout: float) -> None:
        """Kill every live subprocess, cancel every worker and wait for them."""
        killed = runner.kill_all()
        if not self._handles:
            return

        logger.info("Draining %d active job(s), killed %d process(es)", len(self._handles), killed)
        for handle in self._handles.values():
            if handle.task is not None and not handle.task.done():
                logger.info("Cancelling job %s (%s)", handle.job_id, handle.task.get_name())
                handle.task.cancel()

        tasks = self.tasks()
        if tasks:
            try:
                await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for %d job(s) to stop", len(tasks))
        self._handles.clear()


class DownloadEngine:
    """
    Runs queued downloads one at a time.

    ``tick`` admits the next PENDING job when nothing is active; the worker
    downloads chapter by chapter, recording each one in the history store as
    soon as its archive is on disk. ``auto_retry_failed`` returns eligible
    FAILED jobs to the queue under linear backoff.
    """

    def __init__(
        self,
        queue: DownloadQueue,
        history: ChapterHistoryStore,
        runner: ProcessRunner,
        api_client: MangaDexClient,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        rescan_hook: RescanHook | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue = queue
        self.history = history
        self.runner = runner
        self.api_client = api_client
        self.rate_limiter = rate_limiter
        self.registry = ActiveJobRegistry()
        self._rescan_hook = rescan_hook
        self._subscribers: list[ProgressSubscriber] = []
        self._tick_lock = asyncio.Lock()
        self._loop_tasks: list[asyncio.Task[None]] = []
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(self, subscriber: ProgressSubscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: ProgressSubscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def _publish(self, update: ProgressUpdate) -> None:
        for subscriber in list(self._subscribers):
            try:
                await subscriber(update)
            except Exception as e:
                logger.warning("Progress subscriber failed for job %s: %s", update.job_id, e)

    async def _publish_job(self, job: Job | None, message: str | None = None) -> None:
        if job is not None:
            await self._publish(ProgressUpdate.from_job(job, message))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def is_active(self, job_id: UUID) -> bool:
        return job_id in self.registry

    async def start(self) -> None:
        """Start the queue polling loop and the auto-retry loop."""
        if self._loop_tasks:
            return
        self._shutting_down = False
        self._loop_tasks = [
            asyncio.create_task(
                self._run_periodic(self.tick, self.settings.scheduler_tick_seconds),
                name="download-scheduler",
            ),
            asyncio.create_task(
                self._run_periodic(self.auto_retry_failed, self.settings.retry_check_seconds),
                name="download-auto-retry",
            ),
        ]
        logger.info(
            "Download engine started (tick=%ss, retry sweep=%ss)",
            self.settings.scheduler_tick_seconds,
            self.settings.retry_check_seconds,
        )

    async def _run_periodic(self, fn: Callable[[], Awaitable[Any]], interval: float) -> None:
        while not self._shutting_down:
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", getattr(fn, "__name__", fn))
            await asyncio.sleep(interval)

    async def shutdown(self, timeout: float = 25.0) -> None:
        """
        Stop the loops, kill live subprocesses and drain the registry.

        Jobs interrupted here stay DOWNLOADING in the database and are
        requeued on the next startup.
        """
        if self._shutting_down:
            logger.warning("Shutdown already in progress")
            return
        self._shutting_down = True

        for task in self._loop_tasks:
            task.cancel()
        if self._loop_tasks:
            await asyncio.gather(*self._loop_tasks, return_exceptions=True)
        self._loop_tasks = []

        await self.registry.drain(self.runner, timeout)
        logger.info("Download engine stopped")

    async def wait_idle(self, timeout: float | None = None) -> None:
        """Wait for the currently active workers to finish."""
        tasks = self.registry.tasks()
        if tasks:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def tick(self) -> UUID | None:
        """
        Admit at most one PENDING job.

        Returns:
            The admitted job id, or None if nothing was started.
        """
        async with self._tick_lock:
            if self._shutting_down or not self.registry.is_empty:
                return None
            if not self.runner.is_available():
                logger.warning("Download tool %r not available; queue paused", self.settings.downloader_command)
                return None

            job = await self.queue.dequeue_next_pending()
            if job is None or job.id in self.registry:
                return None

            try:
                job = await self.queue.mark_status(
                    job.id,
                    DownloadStatus.DOWNLOADING,
                    error_message=None,
                    progress_percent=0,
                    current_chapter=0,
                )
            except IllegalTransitionError:
                # Cancelled between the read and the write.
                return None

            handle = ActiveJobHandle(job_id=job.id)
            self.registry.add(handle)
            handle.task = asyncio.create_task(self._run_job(job, handle), name=f"download-{job.id}")
            logger.info("Started job %s (%s)", job.id, job.source_url)
            await self._publish_job(job, "Download started")
            return job.id

    async def auto_retry_failed(self) -> int:
        """Return FAILED jobs whose backoff elapsed to PENDING."""
        base = timedelta(seconds=self.settings.retry_base_seconds)
        jobs = await self.queue.find_failed_ready_for_retry(base)
        retried = 0
        for job in jobs:
            try:
                updated = await self.queue.mark_status(
                    job.id,
                    DownloadStatus.PENDING,
                    retry_count=job.retry_count + 1,
                    error_message=None,
                    progress_percent=0,
                )
            except DownloadQueueError as e:
                logger.warning("Auto-retry skipped for job %s: %s", job.id, e)
                continue
            retried += 1
            logger.info("Auto-retrying job %s (attempt %d/%d)", job.id, updated.retry_count, updated.max_retries)
            await self._publish_job(updated, "Queued for automatic retry")
        return retried

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: UUID) -> Job:
        """
        Cancel a job. An active job's subprocess is killed immediately.

        Raises:
            JobNotFoundError: Unknown job.
            IllegalTransitionError: The job already finished.
        """
        job = await self.queue.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status.is_terminal:
            raise IllegalTransitionError(job_id, job.status, DownloadStatus.CANCELLED)

        handle = self.registry.get(job_id)
        if handle is not None:
            handle.cancel_event.set()
            self.runner.cancel(job_id)

        job = await self.queue.mark_status(job_id, DownloadStatus.CANCELLED, error_message="Cancelled by user")
        logger.info("Job %s cancelled", job_id)
        await self._publish_job(job, "Cancelled")
        return job

    async def retry_job(self, job_id: UUID) -> Job:
        """
        Manually requeue a FAILED job with a fresh retry budget.

        Raises:
            JobNotFoundError: Unknown job.
            IllegalTransitionError: The job is not FAILED.
        """
        job = await self.queue.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != DownloadStatus.FAILED:
            raise IllegalTransitionError(job_id, job.status, DownloadStatus.PENDING)

        job = await self.queue.mark_status(
            job_id,
            DownloadStatus.PENDING,
            retry_count=0,
            error_message=None,
            progress_percent=0,
        )
        await self._publish_job(job, "Queued for retry")
        return job

    async def delete_job(self, job_id: UUID) -> bool:
        handle = self.registry.get(job_id)
        if handle is not None:
            handle.cancel_event.set()
            self.runner.cancel(job_id)
        deleted = await self.queue.delete(job_id)
        if deleted:
            logger.info("Job %s deleted", job_id)
        return deleted

    async def clear_by_status(self, status: DownloadStatus) -> int:
        if status == DownloadStatus.DOWNLOADING:
            raise InvalidDownloadRequestError("Running jobs cannot be cleared; cancel them first")
        return await self.queue.clear_by_status(status)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def resolve_destination(self, job: Job, title: str | None = None) -> Path:
        root = Path(job.library_path) if job.library_path else self.settings.library_dir
        folder = sanitize_filename(title or job.title or "") or sanitize_filename(
            urlparse(job.source_url).netloc + urlparse(job.source_url).path
        )
        return root / (folder or str(job.id))

    async def _run_job(self, job: Job, handle: ActiveJobHandle) -> None:
        try:
            await self._execute(job, handle)
        except asyncio.CancelledError:
            logger.info("Worker for job %s cancelled", job.id)
            raise
        except JobFailure as e:
            await self._fail(job, str(e), permanent=e.permanent)
        except RemoteApiError as e:
            await self._fail(job, str(e), permanent=not isinstance(e, RemoteTransientError))
        except DownloadQueueError as e:
            logger.info("Job %s changed state while running: %s", job.id, e)
        except Exception as e:
            logger.exception("Unexpected error in job %s", job.id)
            await self._fail(job, f"Unexpected error: {e}")
        finally:
            self.registry.remove(job.id)
            self.runner.discard_cancel(job.id)

    async def _execute(self, job: Job, handle: ActiveJobHandle) -> None:
        title_id = extract_title_id(job.source_url)
        if title_id is None:
            await self._execute_whole_url(job, handle)
            return

        title = job.title
        if not title:
            title = (await self.api_client.get_title(title_id, job.language)).title
        destination = self.resolve_destination(job, title)
        destination.mkdir(parents=True, exist_ok=True)
        await self.queue.update_fields(job.id, title=title, destination_path=str(destination))

        chapters = await self.api_client.get_chapters(title_id, job.language)
        if handle.cancelled:
            return

        await self.history.reconcile_directory(title_id, destination, job.language, chapters, series_title=title)
        recorded = await self.history.recorded_keys(title_id, job.language)
        known_urls = await self.history.known_urls(title_id)
        pending = [
            c for c in chapters
            if (c.number, c.group) not in recorded and c.url.lower() not in known_urls
        ]
        total = len(pending)
        logger.info("Job %s: %d of %d chapter(s) to download", job.id, total, len(chapters))
        await self._report(job.id, title, 0, 0, total)

        skipped = 0
        for index, chapter in enumerate(pending, start=1):
            if handle.cancelled:
                return
            await self.rate_limiter.acquire()
            if handle.cancelled:
                return
            if not await self._download_chapter(job, handle, chapter, destination, title, index, total):
                skipped += 1
            if handle.cancelled:
                return
            await self._report(job.id, title, int(index * 100 / total), index, total)

        message = f"{total - skipped} chapter(s) downloaded"
        if skipped:
            message += f", {skipped} produced no archive"
        await self._complete(job, message)

    async def _download_chapter(
        self,
        job: Job,
        handle: ActiveJobHandle,
        chapter: RemoteChapter,
        destination: Path,
        title: str,
        index: int,
        total: int,
    ) -> bool:
        before = _archive_snapshot(destination)

        async def on_progress(event: ProgressEvent) -> None:
            if event.percent is None:
                return
            overall = int(((index - 1) + event.percent / 100) * 100 / total)
            await self._report(job.id, title, overall, index - 1, total)

        result = await self.runner.start(job.id, chapter.url, destination, job.language, on_progress)
        if result.cancelled or handle.cancelled:
            return False
        if not result.success:
            raise JobFailure(f"Chapter {chapter_number_text(chapter.number)}: {result.error_message}")

        produced = sorted(_archive_snapshot(destination) - before)
        if not produced:
            logger.warning("Job %s: no archive produced for %s", job.id, chapter.url)
            return False

        archive = produced[0]
        if archive.parent != destination:
            target = destination / archive.name
            os.replace(archive, target)
            archive = target

        info = ComicInfo(
            web=chapter.url,
            series=title,
            title=chapter.title,
            number=chapter_number_text(chapter.number),
            volume=chapter.volume,
            translator=chapter.group or None,
            language_iso=job.language,
        )
        try:
            archive = finalize_archive(
                archive,
                info,
                build_archive_filename(chapter.number, chapter.title, chapter.group),
            )
        except ArchiveMetadataError as e:
            logger.error("Job %s: metadata for %s not written: %s", job.id, archive.name, e)

        await self.history.record(
            ChapterRecord(
                job_id=job.id,
                title_id=extract_title_id(job.source_url) or job.title_id,
                chapter_url=chapter.url,
                chapter_id=chapter.chapter_id,
                chapter_number=chapter.number,
                volume=chapter.volume,
                language=job.language,
                scanlation_group=chapter.group,
                filename=archive.name,
                source=ChapterSource.DOWNLOAD,
            )
        )
        return True

    async def _execute_whole_url(self, job: Job, handle: ActiveJobHandle) -> None:
        """No chapter listing available: hand the whole URL to the tool once."""
        destination = self.resolve_destination(job)
        destination.mkdir(parents=True, exist_ok=True)
        title = job.title or destination.name
        await self.queue.update_fields(job.id, title=title, destination_path=str(destination))
        await self.rate_limiter.acquire()
        if handle.cancelled:
            return

        async def on_progress(event: ProgressEvent) -> None:
            if event.percent is not None:
                await self._report(job.id, title, event.percent, 0, 0)

        result = await self.runner.start(job.id, job.source_url, destination, job.language, on_progress)
        if result.cancelled or handle.cancelled:
            return
        if not result.success:
            raise JobFailure(result.error_message or "Download tool failed")

        await self.history.reconcile_directory(job.title_id, destination, job.language, series_title=title)
        await self._complete(job, "Download finished")

    async def _report(self, job_id: UUID, title: str, percent: int, current: int, total: int) -> None:
        job = await self.queue.update_progress(job_id, percent, current, total)
        if job is None:
            return
        await self._publish(
            ProgressUpdate(
                job_id=job_id,
                title=title,
                status=job.status,
                percent=job.progress_percent,
                current_chapter=current,
                total_chapters=total,
            )
        )

    async def _complete(self, job: Job, message: str) -> None:
        done = await self.queue.mark_status(job.id, DownloadStatus.COMPLETED, progress_percent=100)
        logger.info("Job %s completed: %s", job.id, message)
        await self._publish_job(done, message)

        if self._rescan_hook is not None:
            try:
                await self._rescan_hook(done)
            except Exception as e:
                logger.warning("Library rescan after job %s failed: %s", job.id, e)

    async def _fail(self, job: Job, message: str, permanent: bool = False) -> None:
        fields: dict[str, Any] = {"error_message": message}
        if permanent:
            current = await self.queue.get(job.id)
            if current is not None:
                fields["retry_count"] = current.max_retries
        try:
            failed = await self.queue.mark_status(job.id, DownloadStatus.FAILED, **fields)
        except DownloadQueueError as e:
            logger.info("Job %s not marked failed: %s", job.id, e)
            return
        logger.error("Job %s failed%s: %s", job.id, " permanently" if permanent else "", message[:500])
        await self._publish_job(failed)


def _archive_snapshot(destination: Path) -> set[Path]:
    if not destination.is_dir():
        return set()
    return {p for p in destination.rglob("*.cbz") if not p.name.startswith(".tmp-")}
