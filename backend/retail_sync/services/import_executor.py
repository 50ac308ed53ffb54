from __future__ import annotations

import asyncio
from typing import Any, Callable

from loguru import logger

from retail_sync.services.catalog import DOMAINS, ENTITIES, DomainSpec, EntitySpec
from retail_sync.services.credentials import CredentialStore
from retail_sync.services.import_jobs import (
    ImportJobService,
    JobCancelledError,
    JobError,
    JobNotFoundError,
)
from retail_sync.services.local_store import LocalStore
from retail_sync.services.remote_api import RemoteApiClient, RemoteApiError, RemoteCredentials

ClientFactory = Callable[[RemoteCredentials], RemoteApiClient]


# -------------------------
# Errors
# -------------------------

class ImportConfigurationError(Exception):
    pass


class UnknownDomainError(ImportConfigurationError):
    pass


class CredentialsNotConfiguredError(ImportConfigurationError):
    pass


class ImportStepError(Exception):
    pass


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


# -------------------------
# Executor
# -------------------------

class ImportExecutor:
    """
    Runs the fixed step list of a domain: one remote collection per step,
    strictly in order, each page persisted before the next one is fetched.
    """

    def __init__(
        self,
        jobs: ImportJobService,
        credentials: CredentialStore,
        local_store: LocalStore,
        *,
        client_factory: ClientFactory = RemoteApiClient,
    ) -> None:
        self._jobs = jobs
        self._credentials = credentials
        self._local = local_store
        self._client_factory = client_factory
        self._tasks: dict[str, asyncio.Task] = {}

    def list_domains(self) -> list[dict[str, Any]]:
        return [
            {"domain": d.name, "label": d.label, "steps": len(d.entities)}
            for d in DOMAINS.values()
        ]

    async def start(self, domain: str) -> str:
        """Creates the job and schedules it. Returns as soon as the job exists."""
        spec = DOMAINS.get(domain)
        if spec is None:
            raise UnknownDomainError(f"Unknown import domain: {domain!r}")

        creds = self._credentials.load_or_none()
        if creds is None:
            raise CredentialsNotConfiguredError(
                "Remote API credentials are not configured. Save them before importing."
            )

        steps = [(table, ENTITIES[table].label) for table in spec.entities]
        job = await self._jobs.create_job(spec.name, spec.label, steps)

        task = asyncio.create_task(self._run(job.id, spec, creds), name=f"import-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._on_task_done(job_id, t))

        logger.info(f"Import job {job.id} started ({domain})")
        return job.id

    async def wait_for(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ---- job body ----

    async def _run(self, job_id: str, domain: DomainSpec, creds: RemoteCredentials) -> None:
        try:
            self._ensure_not_cancelled(job_id)
            await self._jobs.start_job(job_id)
            async with self._client_factory(creds) as client:
                for table in domain.entities:
                    self._ensure_not_cancelled(job_id)
                    await self._run_step(job_id, client, ENTITIES[table], creds)

            self._ensure_not_cancelled(job_id)
            await self._jobs.complete_job(job_id)
            logger.success(f"Import job {job_id} ({domain.name}) completed")

        except (JobCancelledError, JobNotFoundError):
            logger.info(f"Import job {job_id} stopped: cancelled")
        except Exception as exc:
            if self._jobs.is_cancelled(job_id):
                # cancelled while pending or mid-step; start_job rejects a cancelled job
                logger.info(f"Import job {job_id} stopped: cancelled ({exc!r})")
                return
            logger.error(f"Import job {job_id} ({domain.name}) failed: {exc!r}")
            await self._jobs.fail_job(job_id, _error_message(exc))

    async def _run_step(
        self,
        job_id: str,
        client: RemoteApiClient,
        spec: EntitySpec,
        creds: RemoteCredentials,
    ) -> None:
        try:
            if spec.is_nested:
                await self._nested_step(job_id, client, spec)
            else:
                await self._paged_step(job_id, client, spec, creds)
        except JobError:
            raise
        except Exception as exc:
            logger.error(f"Step {spec.table} of job {job_id} failed: {exc!r}")
            await self._jobs.fail_step(job_id, spec.table, _error_message(exc))
            raise

    async def _paged_step(
        self,
        job_id: str,
        client: RemoteApiClient,
        spec: EntitySpec,
        creds: RemoteCredentials,
    ) -> None:
        processed = 0
        params = {"lojaId": creds.store_id} if spec.store_scoped else None

        async def on_page(items: list[dict[str, Any]], offset: int, total: int) -> None:
            nonlocal processed
            self._ensure_not_cancelled(job_id)
            self._local.import_records(spec, items)
            processed += len(items)
            await self._jobs.update_step(job_id, spec.table, processed, total)

        await client.fetch_all(spec.endpoint, on_page, params=params)

        self._ensure_not_cancelled(job_id)
        await self._jobs.complete_step(job_id, spec.table, processed)
        logger.info(f"Step {spec.table} done ({processed})")

    async def _nested_step(self, job_id: str, client: RemoteApiClient, spec: EntitySpec) -> None:
        """
        One lookup per already-imported parent, sequentially. A failed lookup
        only skips that parent; the step fails when every lookup failed.
        """
        parent_ids = self._local.column_values(spec.parent_table or "", "id")
        total = len(parent_ids)
        if total == 0:
            await self._jobs.complete_step(job_id, spec.table, 0)
            return

        saved = 0
        failures = 0
        last_error: Exception | None = None

        for processed, parent_id in enumerate(parent_ids, start=1):
            self._ensure_not_cancelled(job_id)
            try:
                items = await client.fetch_nested(spec.endpoint.format(parent_id=parent_id))
            except RemoteApiError as exc:
                failures += 1
                last_error = exc
                logger.warning(f"{spec.table}: lookup for parent {parent_id} failed: {exc}")
            else:
                if items:
                    for item in items:
                        item.setdefault(spec.parent_field, parent_id)
                    saved += self._local.import_records(spec, items)
            await self._jobs.update_step(job_id, spec.table, processed, total)

        if failures == total:
            raise ImportStepError(f"All {total} {spec.label.lower()} lookups failed: {last_error}")
        if failures:
            logger.warning(f"{spec.table}: {failures}/{total} parent lookups failed")

        self._ensure_not_cancelled(job_id)
        await self._jobs.complete_step(job_id, spec.table, saved)

    # ---- internals ----

    def _ensure_not_cancelled(self, job_id: str) -> None:
        if self._jobs.is_cancelled(job_id):
            raise JobCancelledError(f"Job {job_id} was cancelled")

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Import task for job {job_id} ended with an unhandled error: {exc!r}")
