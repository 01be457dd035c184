"""Periodic chapter checks: compare remote chapter counts with the local history."""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import select

from core.config import Settings, get_settings
from db.models import FollowEntry, JobOrigin, utcnow
from services.archive_metadata import sanitize_filename
from services.chapter_history import ChapterHistoryStore
from services.download_queue import DownloadQueue, DownloadQueueError
from services.mangadex_client import MangaDexClient, RemoteApiError, extract_title_id

logger = logging.getLogger(__name__)


@dataclass
class ChapterCheckResult:
    """Outcome of checking one followed title."""

    url: str
    title_id: str | None
    title: str | None = None
    remote_count: int = 0
    downloaded_count: int = 0
    new_chapters: int = 0
    needs_download: bool = False
    queued: bool = False
    error: str | None = None


@dataclass
class ChapterCheckSummary:
    """Aggregate result of a check run."""

    total: int = 0
    checked: int = 0
    needs_download: int = 0
    up_to_date: int = 0
    errors: int = 0
    queued: int = 0
    results: list[ChapterCheckResult] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ChapterChecker:
    """
    Fans out over followed titles with bounded concurrency.

    A failing title is recorded in the summary and never aborts the run.
    """

    def __init__(
        self,
        session_factory: Any,
        api_client: MangaDexClient,
        history: ChapterHistoryStore,
        queue: DownloadQueue,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.api_client = api_client
        self.history = history
        self.queue = queue
        self._run_lock = asyncio.Lock()

    async def _enabled_entries(self) -> list[FollowEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(FollowEntry).where(FollowEntry.enabled.is_(True)).order_by(FollowEntry.created_at)
            )
            return list(result.scalars().all())

    def _title_directory(self, entry: FollowEntry, title: str | None) -> Path | None:
        name = sanitize_filename(title or entry.title or "")
        if not name:
            return None
        root = Path(entry.library_path) if entry.library_path else self.settings.library_dir
        return root / name

    async def check_entry(self, entry: FollowEntry) -> ChapterCheckResult:
        """Compare one title's remote chapter count against the history store."""
        title_id = extract_title_id(entry.source_url)
        result = ChapterCheckResult(url=entry.source_url, title_id=title_id, title=entry.title or None)
        if title_id is None:
            result.error = "Not a MangaDex URL"
            return result

        try:
            if not result.title:
                result.title = (await self.api_client.get_title(title_id, entry.language)).title
            result.remote_count = await self.api_client.get_aggregate_count(title_id, entry.language)
            result.downloaded_count = await self.history.count_for_title(title_id, entry.language)

            if result.remote_count > result.downloaded_count:
                # The index may be behind the archives on disk.
                directory = self._title_directory(entry, result.title)
                if directory is not None and directory.is_dir():
                    reconciled = await self.history.reconcile_directory(
                        title_id, directory, entry.language, series_title=result.title
                    )
                    if reconciled.changed:
                        result.downloaded_count = await self.history.count_for_title(title_id, entry.language)
        except RemoteApiError as e:
            result.error = str(e)
            return result

        result.new_chapters = max(0, result.remote_count - result.downloaded_count)
        result.needs_download = result.new_chapters > 0
        return result

    async def check_urls(self, entries: list[FollowEntry]) -> ChapterCheckSummary:
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.settings.chapter_check_concurrency)

        async def check_one(entry: FollowEntry) -> ChapterCheckResult:
            async with semaphore:
                try:
                    return await self.check_entry(entry)
                except Exception as e:
                    logger.exception("Chapter check failed for %s", entry.source_url)
                    return ChapterCheckResult(
                        url=entry.source_url,
                        title_id=extract_title_id(entry.source_url),
                        error=str(e),
                    )

        results = list(await asyncio.gather(*(check_one(e) for e in entries)))

        summary = ChapterCheckSummary(total=len(entries), results=results)
        for r in results:
            if r.error:
                summary.errors += 1
                continue
            summary.checked += 1
            if r.needs_download:
                summary.needs_download += 1
            else:
                summary.up_to_date += 1
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        return summary

    async def check_all(self) -> ChapterCheckSummary:
        return await self.check_urls(await self._enabled_entries())

    async def check_and_queue_new_chapters(self) -> ChapterCheckSummary:
        """
        Check every enabled follow entry and queue downloads for titles with
        new chapters, unless a job for the title is already pending or running.
        """
        if self._run_lock.locked():
            logger.info("Chapter check already running; skipping")
            return ChapterCheckSummary()

        async with self._run_lock:
            entries = await self._enabled_entries()
            logger.info("Checking %d followed title(s) for new chapters", len(entries))
            summary = await self.check_urls(entries)

            by_url = {e.source_url: e for e in entries}
            for result in summary.results:
                entry = by_url[result.url]
                if result.needs_download:
                    result.queued = await self._queue(entry, result)
                    if result.queued:
                        summary.queued += 1
                await self._update_entry(entry, result)

            logger.info(
                "Chapter check finished: %d checked, %d need download, %d queued, %d error(s) in %dms",
                summary.checked,
                summary.needs_download,
                summary.queued,
                summary.errors,
                summary.duration_ms,
            )
            return summary

    async def _queue(self, entry: FollowEntry, result: ChapterCheckResult) -> bool:
        if result.title_id and await self.queue.has_active_job_for_title(result.title_id):
            logger.debug("Job for %s already queued", entry.source_url)
            return False
        library = entry.library_path if entry.library_path and Path(entry.library_path).is_dir() else None
        try:
            await self.queue.enqueue(
                entry.source_url,
                library,
                title=result.title,
                language=entry.language,
                origin=JobOrigin.CHAPTER_CHECK,
            )
        except DownloadQueueError as e:
            logger.warning("Could not queue %s: %s", entry.source_url, e)
            return False
        return True

    async def _update_entry(self, entry: FollowEntry, result: ChapterCheckResult) -> None:
        now = utcnow()
        async with self._session_factory() as session:
            row = await session.get(FollowEntry, entry.id)
            if row is None:
                return
            row.last_checked_at = now
            row.last_error = result.error
            if not result.error:
                row.last_remote_count = result.remote_count
            if result.title and not row.title:
                row.title = result.title
            row.updated_at = now
            session.add(row)
            await session.commit()
