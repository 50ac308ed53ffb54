from __future__ import annotations

from fastapi import Request

from retail_sync.services.credentials import CredentialStore
from retail_sync.services.import_executor import ImportExecutor
from retail_sync.services.import_jobs import ImportJobService
from retail_sync.services.legacy_sync import LegacySyncService
from retail_sync.services.local_store import LocalStore
from retail_sync.services.record_sync import RecordSyncService


def get_job_service(request: Request) -> ImportJobService:
    return request.app.state.job_service


def get_executor(request: Request) -> ImportExecutor:
    return request.app.state.executor


def get_credential_store(request: Request) -> CredentialStore:
    return request.app.state.credential_store


def get_record_sync(request: Request) -> RecordSyncService:
    return request.app.state.record_sync


def get_legacy_sync(request: Request) -> LegacySyncService:
    return request.app.state.legacy_sync


def get_local_store(request: Request) -> LocalStore:
    return request.app.state.local_store
