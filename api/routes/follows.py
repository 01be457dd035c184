"""Follow list and chapter-check scheduler endpoints."""

from pathlib import Path
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_services
from db.models import FollowEntryRead
from services.container import ServiceContainer
from services.download_queue import InvalidDownloadRequestError
from services.follow_list import DuplicateFollowError
from services.follow_scheduler import InvalidScheduleError

router = APIRouter()


class FollowCreateRequest(BaseModel):
    """Request body for following a title."""

    url: str
    library_path: str | None = None
    title: str | None = None
    language: str | None = None


class FollowUpdateRequest(BaseModel):
    enabled: bool


class FollowImportRequest(BaseModel):
    """Import ``follow.txt`` from a library directory (or an explicit file)."""

    library_path: str | None = None
    path: str | None = None


class SchedulerUpdateRequest(BaseModel):
    enabled: bool | None = None
    cron: str | None = None


@router.get("", response_model=list[FollowEntryRead])
async def list_follows(services: ServiceContainer = Depends(get_services)) -> list[FollowEntryRead]:
    entries = await services.follow_list.list_entries()
    return [FollowEntryRead.model_validate(e) for e in entries]


@router.post("", response_model=FollowEntryRead, status_code=201)
async def create_follow(
    request: FollowCreateRequest,
    services: ServiceContainer = Depends(get_services),
) -> FollowEntryRead:
    """Follow a title so the periodic check picks up its new chapters."""
    try:
        entry = await services.follow_list.add(
            request.url,
            request.library_path,
            title=request.title,
            language=request.language,
        )
    except InvalidDownloadRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateFollowError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return FollowEntryRead.model_validate(entry)


@router.post("/import")
async def import_follow_file(
    request: FollowImportRequest,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Import a follow file and queue its titles."""
    if request.path:
        path = Path(request.path)
    else:
        library = Path(request.library_path) if request.library_path else services.settings.library_dir
        path = library / services.settings.follow_file_name
    if not path.is_file():
        raise HTTPException(status_code=404, detail=f"Follow file not found: {path}")

    result = await services.follow_list.import_file(path, request.library_path)
    return {
        "path": result.path,
        "added": result.added,
        "already_followed": result.already_followed,
        "queued": result.queued,
        "invalid": result.invalid,
    }


@router.get("/scheduler")
async def get_scheduler(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return services.follow_scheduler.status()


@router.put("/scheduler")
async def update_scheduler(
    request: SchedulerUpdateRequest,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    """Enable/disable the periodic check or change its cron expression."""
    try:
        return services.follow_scheduler.update_schedule(enabled=request.enabled, cron=request.cron)
    except InvalidScheduleError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{entry_id}", response_model=FollowEntryRead)
async def update_follow(
    entry_id: UUID,
    request: FollowUpdateRequest,
    services: ServiceContainer = Depends(get_services),
) -> FollowEntryRead:
    entry = await services.follow_list.set_enabled(entry_id, request.enabled)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Follow entry {entry_id} not found")
    return FollowEntryRead.model_validate(entry)


@router.delete("/{entry_id}", status_code=204)
async def delete_follow(
    entry_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> None:
    if not await services.follow_list.remove(entry_id):
        raise HTTPException(status_code=404, detail=f"Follow entry {entry_id} not found")
