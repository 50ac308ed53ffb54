from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from retail_sync.api.dependencies import get_record_sync
from retail_sync.services.credentials import CredentialsNotFoundError
from retail_sync.services.record_sync import (
    RecordNotFoundError,
    RecordSyncService,
    SyncResult,
    UnknownSyncDomainError,
)
from retail_sync.services.remote_api import RemoteCredentials

router = APIRouter(prefix="/api/sync", tags=["sync"])


class RunSyncRequest(BaseModel):
    domain: str


class SyncResultResponse(BaseModel):
    domain: str
    created: int
    updated: int
    deleted: int
    errors: int
    total: int
    durationMs: int


class PendingResponse(BaseModel):
    domain: str
    total: int
    records: list[dict[str, Any]]


class SyncHistoryEntry(BaseModel):
    id: int
    domain: str
    result: dict[str, Any]
    durationMs: int
    executedAt: str


def _override_credentials(api_url: Optional[str], api_key: Optional[str]) -> Optional[RemoteCredentials]:
    """x-api-url / x-api-key headers replace the stored credentials for one call."""
    if api_url and api_key:
        return RemoteCredentials(store_id=0, api_url=api_url, api_token=api_key)
    return None


def _result(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(**result.to_dict())


@router.get("/pending/{domain}", response_model=PendingResponse)
def list_pending(domain: str, service: RecordSyncService = Depends(get_record_sync)) -> dict:
    try:
        return service.pending(domain)
    except UnknownSyncDomainError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/run", response_model=SyncResultResponse)
async def run_sync(
    payload: RunSyncRequest,
    x_api_url: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
    service: RecordSyncService = Depends(get_record_sync),
) -> SyncResultResponse:
    try:
        result = await service.sync(payload.domain, _override_credentials(x_api_url, x_api_key))
    except UnknownSyncDomainError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CredentialsNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _result(result)


@router.post("/reprocess/{domain}/{record_key}", response_model=SyncResultResponse)
async def reprocess_record(
    domain: str,
    record_key: str,
    x_api_url: Optional[str] = Header(default=None),
    x_api_key: Optional[str] = Header(default=None),
    service: RecordSyncService = Depends(get_record_sync),
) -> SyncResultResponse:
    try:
        result = await service.reprocess(domain, record_key, _override_credentials(x_api_url, x_api_key))
    except UnknownSyncDomainError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except RecordNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except CredentialsNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _result(result)


@router.get("/history", response_model=list[SyncHistoryEntry])
def sync_history(
    limit: int = Query(default=50, ge=1, le=500),
    service: RecordSyncService = Depends(get_record_sync),
) -> list[dict]:
    return service.history(limit)
