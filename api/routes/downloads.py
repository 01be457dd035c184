"""Download queue endpoints."""

from typing import Any, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from api.deps import get_services
from db.models import ACTIVE_STATUSES, DownloadStatus, JobRead
from services.container import ServiceContainer
from services.download_engine import ProgressUpdate
from services.download_queue import (
    DuplicateJobError,
    IllegalTransitionError,
    InvalidDownloadRequestError,
    JobNotFoundError,
)
from services.websocket_manager import ALL_DOWNLOADS_CHANNEL

router = APIRouter()


class DownloadCreateRequest(BaseModel):
    """Request body for queueing a download."""

    url: str
    library_path: str | None = None
    priority: int | None = Field(default=None, description="1 (highest) to 10 (lowest)")
    title: str | None = None
    language: str | None = None


class DownloadListResponse(BaseModel):
    """Response for job listing."""

    items: list[JobRead]
    total: int


class DownloadActionResponse(BaseModel):
    """Response for cancel/retry actions."""

    status: Literal["cancelled", "queued"]
    job: JobRead


class ClearResponse(BaseModel):
    status: DownloadStatus
    cleared: int


def _parse_statuses(raw: str | None) -> list[DownloadStatus] | None:
    if not raw:
        return None
    statuses: list[DownloadStatus] = []
    for part in raw.split(","):
        part = part.strip().upper()
        if not part:
            continue
        try:
            statuses.append(DownloadStatus(part))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status {part!r}")
    return statuses or None


@router.get("", response_model=DownloadListResponse)
async def list_downloads(
    services: ServiceContainer = Depends(get_services),
    status: str | None = Query(
        default=None,
        description="Filter by status. Can be comma-separated list, e.g. 'PENDING,DOWNLOADING'",
    ),
    library_path: str | None = Query(default=None, description="Filter by target library"),
    limit: int = Query(default=100, ge=1, le=500),
) -> DownloadListResponse:
    """List jobs ordered the way the scheduler will pick them."""
    jobs = await services.queue.list_jobs(_parse_statuses(status), library_path, limit)
    return DownloadListResponse(
        items=[JobRead.model_validate(job) for job in jobs],
        total=len(jobs),
    )


@router.post("", response_model=JobRead, status_code=201)
async def create_download(
    request: DownloadCreateRequest,
    services: ServiceContainer = Depends(get_services),
) -> JobRead:
    """Queue a download for a title URL."""
    try:
        job = await services.queue.enqueue(
            request.url,
            request.library_path,
            request.priority,
            title=request.title,
            language=request.language,
        )
    except InvalidDownloadRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateJobError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "existing_job_id": str(e.existing_id)},
        )
    return JobRead.model_validate(job)


@router.post("/check-now")
async def check_now(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    """Run the chapter check immediately and queue titles with new chapters."""
    summary = await services.follow_scheduler.run_now()
    return summary.to_dict()


@router.delete("/clear/{status}", response_model=ClearResponse)
async def clear_downloads(
    status: DownloadStatus,
    services: ServiceContainer = Depends(get_services),
) -> ClearResponse:
    """Delete every job in one status."""
    try:
        cleared = await services.engine.clear_by_status(status)
    except InvalidDownloadRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ClearResponse(status=status, cleared=cleared)


@router.get("/{job_id}", response_model=JobRead)
async def get_download(
    job_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> JobRead:
    """Get a specific job by ID."""
    job = await services.queue.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobRead.model_validate(job)


@router.post("/{job_id}/cancel", response_model=DownloadActionResponse)
async def cancel_download(
    job_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> DownloadActionResponse:
    """Cancel a pending, running or failed job. A running download is killed."""
    try:
        job = await services.engine.cancel_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    except IllegalTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return DownloadActionResponse(status="cancelled", job=JobRead.model_validate(job))


@router.post("/{job_id}/retry", response_model=DownloadActionResponse)
async def retry_download(
    job_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> DownloadActionResponse:
    """Requeue a failed job."""
    try:
        job = await services.engine.retry_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    except IllegalTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return DownloadActionResponse(status="queued", job=JobRead.model_validate(job))


@router.delete("/{job_id}", status_code=204)
async def delete_download(
    job_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> None:
    """Delete a job, killing its download if it is running."""
    if not await services.engine.delete_job(job_id):
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")


@router.websocket("/ws")
async def downloads_websocket(
    websocket: WebSocket,
    services: ServiceContainer = Depends(get_services),
) -> None:
    """Global progress feed for every job."""
    ws_manager = services.ws_manager
    await ws_manager.connect(websocket, ALL_DOWNLOADS_CHANNEL)
    try:
        # Send an initial snapshot of active jobs.
        jobs = await services.queue.list_jobs(list(ACTIVE_STATUSES), limit=200)
        messages = [ProgressUpdate.from_job(job).to_message() for job in jobs]
        await websocket.send_json({"type": "batch", "messages": messages, "count": len(messages)})

        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, ALL_DOWNLOADS_CHANNEL)


@router.websocket("/ws/{job_id}")
async def download_websocket(
    websocket: WebSocket,
    job_id: UUID,
    services: ServiceContainer = Depends(get_services),
) -> None:
    """Progress feed for one job."""
    job = await services.queue.get(job_id)
    if not job:
        await websocket.close(code=4004, reason="Job not found")
        return

    ws_manager = services.ws_manager
    resource_id = str(job_id)
    await ws_manager.connect(websocket, resource_id)
    try:
        await websocket.send_json(ProgressUpdate.from_job(job).to_message())
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket, resource_id)
