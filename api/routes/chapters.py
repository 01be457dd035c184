"""Chapter history endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from api.deps import get_services
from db.models import ChapterRecordRead
from services.container import ServiceContainer

router = APIRouter()


@router.get("/stats")
async def chapter_stats(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    """Totals of the chapter history index."""
    stats = await services.history.stats()
    stats["rate_limiter"] = services.rate_limiter.stats()
    return stats


@router.get("/{title_id}", response_model=list[ChapterRecordRead])
async def list_title_chapters(
    title_id: str,
    language: str | None = Query(default=None),
    services: ServiceContainer = Depends(get_services),
) -> list[ChapterRecordRead]:
    """Chapters recorded for one title, in chapter order."""
    records = await services.history.list_for_title(title_id, language)
    return [ChapterRecordRead.model_validate(r) for r in records]
