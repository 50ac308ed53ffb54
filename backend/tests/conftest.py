"""
Shared pytest fixtures.

Every test runs against its own SQLite file under ``tmp_path``.
"""
from __future__ import annotations

from typing import Callable

import httpx
import pytest

from retail_sync.core.config import settings
from retail_sync.db import session
from retail_sync.services.credentials import CredentialStore
from retail_sync.services.import_jobs import ImportJobService, JobRegistry
from retail_sync.services.job_events import JobEventHub
from retail_sync.services.job_store import JobStore
from retail_sync.services.local_store import LocalStore
from retail_sync.services.remote_api import RemoteApiClient, RemoteCredentials


@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    db_path = tmp_path / "retail_sync_test.db"
    monkeypatch.setattr(session, "DB_PATH", db_path)
    monkeypatch.setattr(settings, "LOG_FILE", "")
    session.init_db()
    return db_path


@pytest.fixture
def remote_creds() -> RemoteCredentials:
    return RemoteCredentials(store_id=1, api_url="https://shop.test/api/v1", api_token="token-abc123")


@pytest.fixture
def credential_store() -> CredentialStore:
    return CredentialStore()


@pytest.fixture
def saved_creds(credential_store: CredentialStore) -> RemoteCredentials:
    return credential_store.save(1, "https://shop.test", "token-abc123")


@pytest.fixture
def local_store() -> LocalStore:
    return LocalStore()


@pytest.fixture
def mock_client_factory() -> Callable[[Callable], Callable[[RemoteCredentials], RemoteApiClient]]:
    """Builds a client factory whose clients answer through ``handler``."""

    def build(handler: Callable) -> Callable[[RemoteCredentials], RemoteApiClient]:
        def factory(creds: RemoteCredentials) -> RemoteApiClient:
            return RemoteApiClient(
                creds,
                transport=httpx.MockTransport(handler),
                page_delay_s=0,
                retry_delay_s=0,
            )

        return factory

    return build


@pytest.fixture
def job_store() -> JobStore:
    return JobStore()


@pytest.fixture
def job_registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def event_hub() -> JobEventHub:
    return JobEventHub()


@pytest.fixture
async def job_service(job_store, job_registry, event_hub):
    service = ImportJobService(
        job_store,
        job_registry,
        event_hub,
        eviction_delay_s=0.01,
        cancel_eviction_delay_s=0.01,
    )
    yield service
    await service.shutdown()
