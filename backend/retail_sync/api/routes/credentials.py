from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from retail_sync.api.dependencies import get_credential_store
from retail_sync.services.credentials import CredentialStore, InvalidCredentialsError
from retail_sync.services.remote_api import RemoteCredentials

router = APIRouter(prefix="/api/credentials", tags=["credentials"])


class SaveCredentialsRequest(BaseModel):
    storeId: int = Field(..., gt=0, examples=[1])
    apiUrl: str = Field(..., examples=["https://shop.example.com"])
    apiToken: str = Field(..., examples=["secret-token"])


class CredentialsStatusResponse(BaseModel):
    configured: bool
    storeId: Optional[int] = None
    apiUrl: Optional[str] = None
    # only the last characters of the token ever leave the server
    tokenHint: Optional[str] = None


class ClearCredentialsResponse(BaseModel):
    cleared: bool


def _status(creds: RemoteCredentials | None) -> CredentialsStatusResponse:
    if creds is None:
        return CredentialsStatusResponse(configured=False)
    return CredentialsStatusResponse(
        configured=True,
        storeId=creds.store_id,
        apiUrl=creds.api_url,
        tokenHint=f"****{creds.api_token[-6:]}",
    )


@router.get("", response_model=CredentialsStatusResponse)
def get_credentials(store: CredentialStore = Depends(get_credential_store)) -> CredentialsStatusResponse:
    return _status(store.load_or_none())


@router.put("", response_model=CredentialsStatusResponse)
def save_credentials(
    payload: SaveCredentialsRequest,
    store: CredentialStore = Depends(get_credential_store),
) -> CredentialsStatusResponse:
    try:
        creds = store.save(payload.storeId, payload.apiUrl, payload.apiToken)
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return _status(creds)


@router.delete("", response_model=ClearCredentialsResponse)
def clear_credentials(store: CredentialStore = Depends(get_credential_store)) -> ClearCredentialsResponse:
    store.clear()
    return ClearCredentialsResponse(cleared=True)
