"""Chapter history store: the index of chapters already materialized on disk."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import IntegrityError

from db.models import ChapterRecord, ChapterSource, as_utc, utcnow
from services.archive_metadata import (
    ArchiveMetadataError,
    ComicInfo,
    chapter_number_text,
    list_archives,
    parse_chapter_number,
    parse_group,
    read_comic_info,
    write_comic_info,
)

if TYPE_CHECKING:
    from services.mangadex_client import RemoteChapter

logger = logging.getLogger(__name__)

LEGACY_TRACKER_NAME = ".chapter-urls.json"


@dataclass
class ReconcileResult:
    """Outcome of scanning a title directory against the index."""

    scanned: int = 0
    indexed: int = 0
    backfilled: int = 0
    imported: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.indexed or self.backfilled or self.imported)


def _normalize_group(group: str | None) -> str:
    return (group or "").strip()


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ChapterHistoryStore:
    """
    Persistent index of downloaded chapters.

    The index is a cache. The embedded metadata tag inside each archive is
    the authority, and :meth:`reconcile_directory` rebuilds missing rows from
    it.
    """

    def __init__(self, session_factory: Any) -> None:
        self._session_factory = session_factory

    async def is_downloaded(
        self,
        title_id: str,
        chapter_number: float,
        language: str,
        group: str | None = "",
    ) -> bool:
        async with self._session_factory() as session:
            stmt = select(ChapterRecord.id).where(
                ChapterRecord.title_id == title_id,
                ChapterRecord.chapter_number == float(chapter_number),
                ChapterRecord.language == language,
                ChapterRecord.scanlation_group == _normalize_group(group),
            )
            result = await session.execute(stmt.limit(1))
            return result.scalar_one_or_none() is not None

    async def record(self, record: ChapterRecord) -> bool:
        """
        Append one chapter record.

        Returns:
            True if a new row was written, False if the chapter was already recorded.
        """
        record.scanlation_group = _normalize_group(record.scanlation_group)
        async with self._session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(
                    "Chapter %s of %s [%s] already recorded",
                    record.chapter_number,
                    record.title_id,
                    record.scanlation_group,
                )
                return False
        return True

    async def count_for_title(self, title_id: str, language: str) -> int:
        """Number of distinct chapter numbers recorded for a title."""
        async with self._session_factory() as session:
            stmt = select(func.count(distinct(ChapterRecord.chapter_number))).where(
                ChapterRecord.title_id == title_id,
                ChapterRecord.language == language,
            )
            result = await session.execute(stmt)
            return int(result.scalar_one() or 0)

    async def recorded_keys(self, title_id: str, language: str) -> set[tuple[float, str]]:
        """(chapter_number, group) pairs recorded for a title."""
        async with self._session_factory() as session:
            stmt = select(ChapterRecord.chapter_number, ChapterRecord.scanlation_group).where(
                ChapterRecord.title_id == title_id,
                ChapterRecord.language == language,
            )
            result = await session.execute(stmt)
            return {(float(num), group) for num, group in result.all()}

    async def known_urls(self, title_id: str) -> set[str]:
        async with self._session_factory() as session:
            stmt = select(ChapterRecord.chapter_url).where(
                ChapterRecord.title_id == title_id,
                ChapterRecord.chapter_url.is_not(None),
            )
            result = await session.execute(stmt)
            return {url.lower() for url in result.scalars().all()}

    async def list_for_title(self, title_id: str, language: str | None = None) -> list[ChapterRecord]:
        async with self._session_factory() as session:
            stmt = select(ChapterRecord).where(ChapterRecord.title_id == title_id)
            if language:
                stmt = stmt.where(ChapterRecord.language == language)
            stmt = stmt.order_by(ChapterRecord.chapter_number, ChapterRecord.scanlation_group)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_for_job(self, job_id: UUID) -> list[ChapterRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(ChapterRecord)
                .where(ChapterRecord.job_id == job_id)
                .order_by(ChapterRecord.downloaded_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_for_title(self, title_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(ChapterRecord).where(ChapterRecord.title_id == title_id))
            await session.commit()
            return result.rowcount or 0

    async def stats(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            total = (await session.execute(select(func.count(ChapterRecord.id)))).scalar_one()
            titles = (
                await session.execute(select(func.count(distinct(ChapterRecord.title_id))))
            ).scalar_one()
            by_source_rows = await session.execute(
                select(ChapterRecord.source, func.count(ChapterRecord.id)).group_by(ChapterRecord.source)
            )
            by_source = {
                (src.value if hasattr(src, "value") else str(src)): count
                for src, count in by_source_rows.all()
            }
        return {"total_chapters": total, "total_titles": titles, "by_source": by_source}

    async def reconcile_directory(
        self,
        title_id: str,
        directory: Path,
        language: str,
        chapters: Iterable[RemoteChapter] | None = None,
        series_title: str | None = None,
    ) -> ReconcileResult:
        """
        Bring the index in line with the archives present in ``directory``.

        Archives carrying a chapter URL in their metadata are indexed if
        missing. Archives without it are matched to ``chapters`` by chapter
        number and group parsed from the filename, and the metadata is
        backfilled into the archive. A legacy tracker file is imported once
        and then removed.
        """
        result = ReconcileResult()
        if not directory.is_dir():
            return result

        remote = [c for c in (chapters or []) if c.language == language]

        result.imported = await self._import_legacy_tracker(title_id, directory, language)

        for archive in list_archives(directory):
            result.scanned += 1
            try:
                await self._reconcile_archive(title_id, archive, language, remote, series_title, result)
            except ArchiveMetadataError as e:
                logger.warning("Skipping archive %s: %s", archive, e)
                result.errors.append(f"{archive.name}: {e}")

        if result.changed:
            logger.info(
                "Reconciled %s: scanned=%d indexed=%d backfilled=%d imported=%d",
                title_id,
                result.scanned,
                result.indexed,
                result.backfilled,
                result.imported,
            )
        return result

    async def _reconcile_archive(
        self,
        title_id: str,
        archive: Path,
        language: str,
        remote: list[RemoteChapter],
        series_title: str | None,
        result: ReconcileResult,
    ) -> None:
        info = read_comic_info(archive)

        if info is not None and info.web:
            number = _to_float(info.number)
            if number is None:
                number = parse_chapter_number(archive.name)
            if number is None:
                result.errors.append(f"{archive.name}: no chapter number")
                return
            if info.language_iso and info.language_iso != language:
                return
            added = await self.record(
                ChapterRecord(
                    title_id=title_id,
                    chapter_url=info.web,
                    chapter_number=number,
                    volume=info.volume,
                    language=language,
                    scanlation_group=info.translator or parse_group(archive.name),
                    filename=archive.name,
                    source=ChapterSource.ARCHIVE_SCAN,
                )
            )
            if added:
                result.indexed += 1
            return

        number = parse_chapter_number(archive.name)
        if number is None:
            result.errors.append(f"{archive.name}: no chapter number")
            return
        group = parse_group(archive.name)
        match = _match_remote_chapter(number, group, remote)

        if match is None:
            # Present on disk but unidentifiable; index it so it isn't fetched again.
            if await self.record(
                ChapterRecord(
                    title_id=title_id,
                    chapter_number=number,
                    language=language,
                    scanlation_group=group,
                    filename=archive.name,
                    source=ChapterSource.ARCHIVE_SCAN,
                )
            ):
                result.indexed += 1
            return

        write_comic_info(
            archive,
            ComicInfo(
                web=match.url,
                series=series_title,
                title=match.title,
                number=chapter_number_text(match.number),
                volume=match.volume,
                translator=match.group or None,
                language_iso=language,
            ),
        )
        result.backfilled += 1
        await self.record(
            ChapterRecord(
                title_id=title_id,
                chapter_url=match.url,
                chapter_id=match.chapter_id,
                chapter_number=match.number,
                volume=match.volume,
                language=language,
                scanlation_group=match.group,
                filename=archive.name,
                source=ChapterSource.ARCHIVE_SCAN,
            )
        )

    async def _import_legacy_tracker(self, title_id: str, directory: Path, language: str) -> int:
        tracker = directory / LEGACY_TRACKER_NAME
        if not tracker.is_file():
            return 0

        try:
            data = json.loads(tracker.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable legacy tracker %s: %s", tracker, e)
            return 0

        entries = data.get("chapters", []) if isinstance(data, dict) else data
        if not isinstance(entries, list):
            entries = []

        imported = 0
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            number = _to_float(entry.get("chapter"))
            url = entry.get("url")
            if number is None or not url:
                continue
            lang = entry.get("lang") or language
            volume = entry.get("volume")
            added = await self.record(
                ChapterRecord(
                    title_id=title_id,
                    chapter_url=url,
                    chapter_id=entry.get("chapterId"),
                    chapter_number=number,
                    volume=str(volume) if volume is not None else None,
                    language=lang,
                    scanlation_group=entry.get("scanlationGroup") or "",
                    source=ChapterSource.LEGACY_IMPORT,
                    downloaded_at=_parse_timestamp(entry.get("downloadedAt")),
                )
            )
            if added:
                imported += 1

        try:
            tracker.unlink()
        except OSError as e:
            logger.warning("Failed to delete legacy tracker file %s: %s", tracker, e)

        logger.info("Imported %d chapter(s) from legacy tracker %s", imported, tracker)
        return imported


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, str) and raw:
        try:
            return as_utc(datetime.fromisoformat(raw.replace("Z", "+00:00")))
        except ValueError:
            pass
    return utcnow()


def _match_remote_chapter(
    number: float,
    group: str,
    remote: list[RemoteChapter],
) -> RemoteChapter | None:
    candidates = [c for c in remote if c.number == number]
    if not candidates:
        return None
    if group:
        for c in candidates:
            if c.group.lower() == group.lower():
                return c
        return None
    return candidates[0] if len(candidates) == 1 else None
