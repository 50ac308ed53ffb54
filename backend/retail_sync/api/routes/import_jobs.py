from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from retail_sync.api.dependencies import get_executor, get_job_service
from retail_sync.services.import_executor import (
    CredentialsNotConfiguredError,
    ImportExecutor,
    UnknownDomainError,
)
from retail_sync.services.import_jobs import ImportJobService, JobNotFoundError
from retail_sync.services.job_events import format_sse

router = APIRouter(prefix="/api/import-jobs", tags=["import-jobs"])

JobStatusName = Literal["pending", "running", "completed", "error", "cancelled"]


# -------------------------
# API models
# -------------------------

class StartJobRequest(BaseModel):
    domain: str


class StartJobResponse(BaseModel):
    jobId: str


class DomainResponse(BaseModel):
    domain: str
    label: str
    steps: int


class JobStepResponse(BaseModel):
    name: str
    label: str
    status: JobStatusName
    processed: int = 0
    total: int = 0
    pct: Optional[int] = None
    error: Optional[str] = None


class ImportJobResponse(BaseModel):
    id: str
    domain: str
    label: str
    status: JobStatusName
    steps: list[JobStepResponse]
    createdAt: str
    updatedAt: str
    completedAt: Optional[str] = None
    errorMsg: Optional[str] = None


class CancelJobResponse(BaseModel):
    cancelled: bool


# -------------------------
# Routes
# -------------------------

@router.post("/start", response_model=StartJobResponse)
async def start_job(
    payload: StartJobRequest,
    executor: ImportExecutor = Depends(get_executor),
) -> StartJobResponse:
    try:
        job_id = await executor.start(payload.domain)
    except UnknownDomainError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CredentialsNotConfiguredError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return StartJobResponse(jobId=job_id)


@router.get("/domains", response_model=list[DomainResponse])
def list_domains(executor: ImportExecutor = Depends(get_executor)) -> list[DomainResponse]:
    return [DomainResponse(**d) for d in executor.list_domains()]


@router.get("/active", response_model=list[ImportJobResponse])
def list_active_jobs(jobs: ImportJobService = Depends(get_job_service)) -> list[dict]:
    return [j.to_dict() for j in jobs.active_jobs()]


@router.get("/history", response_model=list[ImportJobResponse])
def list_job_history(
    limit: int = Query(default=50, ge=1, le=500),
    jobs: ImportJobService = Depends(get_job_service),
) -> list[dict]:
    return [j.to_dict() for j in jobs.history(limit)]


@router.get("/{job_id}", response_model=ImportJobResponse)
def get_job(job_id: str, jobs: ImportJobService = Depends(get_job_service)) -> dict:
    try:
        return jobs.get_job(job_id).to_dict()
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{job_id}/events")
async def stream_job_events(job_id: str, jobs: ImportJobService = Depends(get_job_service)) -> StreamingResponse:
    """Server-sent events: the current snapshot first, then live events until a terminal one."""
    try:
        subscriber = await jobs.subscribe(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    async def event_stream():
        try:
            async for event in subscriber.events():
                yield format_sse(event)
        finally:
            jobs.unsubscribe(subscriber)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.delete("/{job_id}", response_model=CancelJobResponse)
async def cancel_job(job_id: str, jobs: ImportJobService = Depends(get_job_service)) -> CancelJobResponse:
    try:
        await jobs.cancel_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CancelJobResponse(cancelled=True)
