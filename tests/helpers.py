"""Shared builders for tests."""

import zipfile
from pathlib import Path
from typing import Any
from uuid import uuid4

from services.archive_metadata import ComicInfo, write_comic_info
from services.mangadex_client import RemoteApiError, RemoteChapter, TitleInfo


class FakeMangaDexClient:
    """In-memory replacement for :class:`MangaDexClient`."""

    def __init__(self) -> None:
        self.titles: dict[str, str] = {}
        self.chapters: dict[str, list[RemoteChapter]] = {}
        self.counts: dict[str, int] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def add_title(self, title: str, chapters: list[RemoteChapter] | None = None, count: int | None = None) -> str:
        title_id = str(uuid4())
        self.titles[title_id] = title
        self.chapters[title_id] = chapters or []
        if count is not None:
            self.counts[title_id] = count
        return title_id

    def _check(self, method: str, title_id: str) -> None:
        self.calls.append((method, title_id))
        if title_id in self.errors:
            raise self.errors[title_id]

    async def get_title(self, title_id: str, language: str = "en") -> TitleInfo:
        self._check("title", title_id)
        if title_id not in self.titles:
            raise RemoteApiError(f"unknown title {title_id}")
        return TitleInfo(title_id=title_id, title=self.titles[title_id])

    async def get_aggregate_count(self, title_id: str, language: str = "en") -> int:
        self._check("aggregate", title_id)
        if title_id in self.counts:
            return self.counts[title_id]
        return len({c.number for c in self.chapters.get(title_id, []) if c.language == language})

    async def get_chapters(self, title_id: str, language: str = "en") -> list[RemoteChapter]:
        self._check("chapters", title_id)
        return [c for c in self.chapters.get(title_id, []) if c.language == language]

    async def close(self) -> None:
        return None


def title_url(title_id: str) -> str:
    return f"https://mangadex.org/title/{title_id}/some-slug"


def make_chapter(number: float, group: str = "Group A", chapter_id: str | None = None, **kwargs: Any) -> RemoteChapter:
    """Remote chapter whose id doubles as the fake downloader's behaviour switch."""
    return RemoteChapter(
        chapter_id=chapter_id or f"chap-{str(number).replace('.', '-')}-{uuid4().hex[:8]}",
        number=number,
        language=kwargs.pop("language", "en"),
        group=group,
        **kwargs,
    )


def make_archive(path: Path, info: ComicInfo | None = None, pages: int = 2) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for i in range(pages):
            zf.writestr(f"{i + 1:03d}.jpg", b"\xff\xd8data")
    if info is not None:
        write_comic_info(path, info)
    return path
