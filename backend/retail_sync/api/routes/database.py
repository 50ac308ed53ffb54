from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from retail_sync.api.dependencies import get_job_service, get_local_store
from retail_sync.services.import_jobs import ImportJobService
from retail_sync.services.local_store import LocalStore

router = APIRouter(prefix="/api/database", tags=["database"])


class DatabaseStatusResponse(BaseModel):
    timestamp: str
    # None: table not created yet
    tables: dict[str, Optional[int]]


class InitResponse(BaseModel):
    initialized: bool


class TablesResponse(BaseModel):
    tables: list[str]


def _ensure_idle(job_service: ImportJobService) -> None:
    active = job_service.active_jobs()
    if active:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{len(active)} import job(s) still running",
        )


@router.get("/status", response_model=DatabaseStatusResponse)
def database_status(store: LocalStore = Depends(get_local_store)) -> dict:
    return store.stats()


@router.post("/init", response_model=InitResponse)
def init_database(store: LocalStore = Depends(get_local_store)) -> InitResponse:
    store.initialize()
    return InitResponse(initialized=True)


@router.post("/clear", response_model=TablesResponse)
def clear_database(
    store: LocalStore = Depends(get_local_store),
    job_service: ImportJobService = Depends(get_job_service),
) -> TablesResponse:
    _ensure_idle(job_service)
    return TablesResponse(tables=store.clear())


@router.post("/reset", response_model=TablesResponse)
def reset_database(
    store: LocalStore = Depends(get_local_store),
    job_service: ImportJobService = Depends(get_job_service),
) -> TablesResponse:
    _ensure_idle(job_service)
    return TablesResponse(tables=store.reset())
