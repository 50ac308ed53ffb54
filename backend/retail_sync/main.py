from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from retail_sync.api.routes import compare, credentials, database, import_jobs, legacy, sync
from retail_sync.core.config import get_cors_origins, settings
from retail_sync.core.logging import configure_logging
from retail_sync.db.session import init_db
from retail_sync.services.credentials import CredentialStore
from retail_sync.services.import_executor import ClientFactory, ImportExecutor
from retail_sync.services.import_jobs import ImportJobService, JobRegistry
from retail_sync.services.job_events import JobEventHub
from retail_sync.services.job_store import JobStore
from retail_sync.services.legacy_store import LegacyCredentials, credentials_from_settings
from retail_sync.services.legacy_sync import LegacySyncService
from retail_sync.services.local_store import LocalStore
from retail_sync.services.record_sync import RecordSyncService
from retail_sync.services.remote_api import RemoteApiClient


def _build_services(
    app: FastAPI,
    client_factory: ClientFactory,
    legacy_credentials: Optional[LegacyCredentials],
) -> None:
    local_store = LocalStore()
    credential_store = CredentialStore()
    job_service = ImportJobService(JobStore(), JobRegistry(), JobEventHub())

    app.state.local_store = local_store
    app.state.credential_store = credential_store
    app.state.job_service = job_service
    app.state.executor = ImportExecutor(
        job_service,
        credential_store,
        local_store,
        client_factory=client_factory,
    )
    app.state.record_sync = RecordSyncService(local_store, credential_store, client_factory=client_factory)
    app.state.legacy_sync = LegacySyncService(local_store, legacy_credentials)


def create_app(
    client_factory: ClientFactory = RemoteApiClient,
    legacy_credentials: Optional[LegacyCredentials] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        init_db()
        _build_services(
            app,
            client_factory,
            legacy_credentials if legacy_credentials is not None else credentials_from_settings(settings),
        )
        app.state.job_service.recover()
        logger.success(f"{settings.APP_NAME} {settings.APP_VERSION} started")
        yield
        await app.state.executor.shutdown()
        await app.state.job_service.shutdown()
        logger.info(f"{settings.APP_NAME} stopped")

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(credentials.router)
    app.include_router(import_jobs.router)
    app.include_router(sync.router)
    app.include_router(compare.router)
    app.include_router(legacy.router)
    app.include_router(database.router)

    @app.get("/health", tags=["health"])
    def health() -> dict:
        return {"status": "ok", "app": settings.APP_NAME, "version": settings.APP_VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("retail_sync.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
