"""Async client for the MangaDex API, limited to chapter discovery."""

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from core.config import Settings, get_settings
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

TITLE_ID_RE = re.compile(r"mangadex\.org/title/([a-f0-9-]{36})", re.IGNORECASE)
CHAPTER_URL_TEMPLATE = "https://mangadex.org/chapter/{chapter_id}"
FEED_PAGE_SIZE = 100


class RemoteApiError(Exception):
    """Base exception for remote API operations."""
    pass


class RemoteTransientError(RemoteApiError):
    """Rate limited, timed out or server-side failure; safe to retry later."""
    pass


class TitleNotFoundError(RemoteApiError):
    """The remote title does not exist."""
    pass


class InvalidSourceUrlError(RemoteApiError):
    """URL does not point at a supported title."""
    pass


@dataclass
class RemoteChapter:
    """One chapter as listed by the remote feed."""

    chapter_id: str
    number: float
    language: str
    group: str = ""
    volume: str | None = None
    title: str | None = None
    pages: int | None = None

    @property
    def url(self) -> str:
        return CHAPTER_URL_TEMPLATE.format(chapter_id=self.chapter_id)


@dataclass
class TitleInfo:
    """Remote title summary."""

    title_id: str
    title: str


def extract_title_id(url: str) -> str | None:
    """Pull the title UUID out of a ``mangadex.org/title/<id>`` URL."""
    m = TITLE_ID_RE.search(url or "")
    return m.group(1).lower() if m else None


def _pick_title(attributes: dict[str, Any], language: str = "en") -> str:
    for alt in attributes.get("altTitles") or []:
        if isinstance(alt, dict) and alt.get(language):
            return str(alt[language])
    titles = attributes.get("title") or {}
    if titles.get(language):
        return str(titles[language])
    for value in titles.values():
        if value:
            return str(value)
    return "Unknown"


def _parse_chapter(item: dict[str, Any]) -> RemoteChapter | None:
    attrs = item.get("attributes") or {}
    if attrs.get("externalUrl"):
        # Hosted elsewhere; the download tool can't fetch it.
        return None
    raw_number = attrs.get("chapter")
    try:
        number = float(raw_number) if raw_number not in (None, "") else 0.0
    except (TypeError, ValueError):
        logger.debug("Skipping chapter %s with number %r", item.get("id"), raw_number)
        return None

    group = ""
    for rel in item.get("relationships") or []:
        if rel.get("type") == "scanlation_group":
            group = ((rel.get("attributes") or {}).get("name") or "").strip()
            break

    return RemoteChapter(
        chapter_id=str(item.get("id")),
        number=number,
        language=attrs.get("translatedLanguage") or "en",
        group=group,
        volume=attrs.get("volume"),
        title=attrs.get("title") or None,
        pages=attrs.get("pages"),
    )


class MangaDexClient:
    """
    Thin wrapper over the MangaDex REST API.

    Every request first takes a permit from the shared rate limiter.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.mangadex_api_url,
            timeout=self.settings.api_timeout_seconds,
            headers={"User-Agent": f"{self.settings.app_name}/{self.settings.app_version}"},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, params: list[tuple[str, Any]] | None = None) -> dict[str, Any]:
        await self.rate_limiter.acquire()
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise RemoteTransientError(f"Timeout calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise RemoteTransientError(f"Network error calling {path}: {e}") from e

        if response.status_code == 404:
            raise TitleNotFoundError(f"Not found: {path}")
        if response.status_code == 429 or response.status_code >= 500:
            raise RemoteTransientError(f"HTTP {response.status_code} from {path}")
        if response.status_code >= 400:
            raise RemoteApiError(f"HTTP {response.status_code} from {path}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteApiError(f"Invalid JSON from {path}") from e
        if not isinstance(data, dict):
            raise RemoteApiError(f"Unexpected payload from {path}")
        return data

    async def get_title(self, title_id: str, language: str = "en") -> TitleInfo:
        data = await self._get_json(f"/manga/{title_id}")
        attributes = (data.get("data") or {}).get("attributes") or {}
        return TitleInfo(title_id=title_id, title=_pick_title(attributes, language))

    async def get_aggregate_count(self, title_id: str, language: str = "en") -> int:
        """
        Total number of chapters available for a title in one language.

        Sums the chapter entries of every volume in the aggregate listing.
        """
        data = await self._get_json(
            f"/manga/{title_id}/aggregate",
            params=[("translatedLanguage[]", language)],
        )
        volumes = data.get("volumes") or {}
        if isinstance(volumes, list):
            volumes = {str(i): v for i, v in enumerate(volumes)}

        total = 0
        for volume in volumes.values():
            chapters = (volume or {}).get("chapters") or {}
            total += len(chapters)
        return total

    async def get_chapters(self, title_id: str, language: str = "en") -> list[RemoteChapter]:
        """Full chapter listing in source order (ascending chapter number)."""
        chapters: list[RemoteChapter] = []
        offset = 0
        while True:
            data = await self._get_json(
                f"/manga/{title_id}/feed",
                params=[
                    ("translatedLanguage[]", language),
                    ("includes[]", "scanlation_group"),
                    ("order[chapter]", "asc"),
                    ("limit", FEED_PAGE_SIZE),
                    ("offset", offset),
                ],
            )
            items = data.get("data") or []
            for item in items:
                chapter = _parse_chapter(item)
                if chapter is not None:
                    chapters.append(chapter)

            offset += len(items)
            total = int(data.get("total") or 0)
            if not items or offset >= total:
                break

        logger.info("Fetched %d chapter(s) for %s (%s)", len(chapters), title_id, language)
        return chapters
