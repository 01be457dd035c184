"""Followed titles: CRUD and ``follow.txt`` import."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from core.config import Settings, get_settings
from db.models import FollowEntry, JobOrigin, utcnow
from services.download_queue import DownloadQueue, DuplicateJobError, InvalidDownloadRequestError
from services.mangadex_client import extract_title_id

logger = logging.getLogger(__name__)


class FollowListError(Exception):
    """Base exception for follow list operations."""
    pass


class DuplicateFollowError(FollowListError):
    """The URL is already followed."""
    pass


@dataclass
class FollowImportResult:
    """Outcome of importing a follow file."""

    path: str
    added: int = 0
    already_followed: int = 0
    queued: int = 0
    invalid: list[str] = field(default_factory=list)


def read_follow_file(path: Path) -> list[str]:
    """URLs from a follow file; blank lines and ``#`` comments are skipped."""
    urls: list[str] = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        urls.append(line)
    return urls


class FollowList:
    """Manages :class:`FollowEntry` rows."""

    def __init__(self, session_factory: Any, queue: DownloadQueue, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.queue = queue

    async def list_entries(self) -> list[FollowEntry]:
        async with self._session_factory() as session:
            result = await session.execute(select(FollowEntry).order_by(FollowEntry.created_at))
            return list(result.scalars().all())

    async def get(self, entry_id: UUID) -> FollowEntry | None:
        async with self._session_factory() as session:
            return await session.get(FollowEntry, entry_id)

    async def add(
        self,
        source_url: str,
        library_path: str | None = None,
        title: str | None = None,
        language: str | None = None,
    ) -> FollowEntry:
        """
        Follow a title.

        Raises:
            InvalidDownloadRequestError: URL is not an http(s) URL.
            DuplicateFollowError: URL already followed.
        """
        source_url = (source_url or "").strip()
        parsed = urlparse(source_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidDownloadRequestError(f"Invalid URL: {source_url!r}")

        entry = FollowEntry(
            source_url=source_url,
            title=title or "",
            title_id=extract_title_id(source_url) or source_url,
            library_path=library_path,
            language=language or self.settings.download_language,
        )
        async with self._session_factory() as session:
            session.add(entry)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateFollowError(f"{source_url} is already followed") from e
            await session.refresh(entry)
        logger.info("Following %s", source_url)
        return entry

    async def set_enabled(self, entry_id: UUID, enabled: bool) -> FollowEntry | None:
        async with self._session_factory() as session:
            entry = await session.get(FollowEntry, entry_id)
            if entry is None:
                return None
            entry.enabled = enabled
            entry.updated_at = utcnow()
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
            return entry

    async def remove(self, entry_id: UUID) -> bool:
        async with self._session_factory() as session:
            entry = await session.get(FollowEntry, entry_id)
            if entry is None:
                return False
            await session.delete(entry)
            await session.commit()
        return True

    async def import_file(self, path: Path, library_path: str | None = None) -> FollowImportResult:
        """
        Import a follow file and queue a download for every title in it.

        Titles that already have a pending, running or completed job are not
        queued again.
        """
        result = FollowImportResult(path=str(path))
        if library_path is None and path.parent.is_dir():
            library_path = str(path.parent)

        for url in read_follow_file(path):
            try:
                await self.add(url, library_path)
                result.added += 1
            except DuplicateFollowError:
                result.already_followed += 1
            except InvalidDownloadRequestError:
                result.invalid.append(url)
                continue

            try:
                await self.queue.enqueue(url, library_path, origin=JobOrigin.FOLLOW_LIST)
                result.queued += 1
            except DuplicateJobError:
                pass
            except InvalidDownloadRequestError as e:
                logger.warning("Follow list entry %s not queued: %s", url, e)

        logger.info(
            "Imported %s: %d added, %d already followed, %d queued, %d invalid",
            path,
            result.added,
            result.already_followed,
            result.queued,
            len(result.invalid),
        )
        return result
