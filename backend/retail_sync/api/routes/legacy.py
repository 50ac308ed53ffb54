from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from retail_sync.api.dependencies import get_legacy_sync
from retail_sync.services.legacy_store import (
    LegacyConnectionError,
    LegacyNotConfiguredError,
    LegacyStoreError,
)
from retail_sync.services.legacy_sync import LegacySyncService, UnknownLegacyDomainError

router = APIRouter(prefix="/api/legacy", tags=["legacy"])


# -------------------------
# API models
# -------------------------

class LegacyStatusResponse(BaseModel):
    connected: bool
    host: str
    database: str
    responseMs: int
    error: Optional[str] = None


class LegacyCompareRequest(BaseModel):
    legacyTable: Optional[str] = None
    keyField: Optional[str] = None
    compareFields: list[str] = Field(default_factory=list)


class LegacyRefreshRequest(BaseModel):
    legacyTable: Optional[str] = None
    keyField: Optional[str] = None


class MigrationError(BaseModel):
    id: Any = None
    error: str


class MigrationResponse(BaseModel):
    migrated: int
    total: int
    errors: int
    errorDetails: list[MigrationError]


class RefreshResponse(BaseModel):
    domain: str
    updated: int
    total: int


# -------------------------
# Helpers
# -------------------------

def _http_error(exc: LegacyStoreError) -> HTTPException:
    if isinstance(exc, UnknownLegacyDomainError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, LegacyNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, LegacyConnectionError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# -------------------------
# Routes
# -------------------------

@router.get("/status", response_model=LegacyStatusResponse)
def legacy_status(service: LegacySyncService = Depends(get_legacy_sync)) -> dict:
    try:
        return service.status()
    except LegacyStoreError as exc:
        raise _http_error(exc) from exc


@router.get("/tables", response_model=list[str])
def legacy_tables(service: LegacySyncService = Depends(get_legacy_sync)) -> list[str]:
    try:
        return service.list_tables()
    except LegacyStoreError as exc:
        raise _http_error(exc) from exc


@router.post("/compare/{domain}")
def compare_with_legacy(
    domain: str,
    payload: Optional[LegacyCompareRequest] = None,
    service: LegacySyncService = Depends(get_legacy_sync),
) -> dict[str, Any]:
    body = payload or LegacyCompareRequest()
    try:
        result = service.compare(domain, body.legacyTable, body.keyField, body.compareFields)
    except LegacyStoreError as exc:
        raise _http_error(exc) from exc
    return result.to_dict()


@router.post("/migrate/{domain}", response_model=MigrationResponse)
def migrate_to_legacy(domain: str, service: LegacySyncService = Depends(get_legacy_sync)) -> dict:
    try:
        return service.migrate(domain)
    except LegacyStoreError as exc:
        raise _http_error(exc) from exc


@router.post("/refresh-local/{domain}", response_model=RefreshResponse)
def refresh_local_from_legacy(
    domain: str,
    payload: Optional[LegacyRefreshRequest] = None,
    service: LegacySyncService = Depends(get_legacy_sync),
) -> dict:
    body = payload or LegacyRefreshRequest()
    try:
        return service.refresh_local(domain, body.legacyTable, body.keyField)
    except LegacyStoreError as exc:
        raise _http_error(exc) from exc
