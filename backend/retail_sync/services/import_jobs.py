"""
Import job orchestration.

``ImportJobService`` owns the lifecycle of every import run. Each mutation
follows the same path under the registry lock:

    mutate in memory -> persist full snapshot -> broadcast event(s)

so a subscriber never receives an event that is ahead of the stored state,
and a newly attached subscriber (which registers under the same lock) never
gets a snapshot older than the first incremental event it sees.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Callable, Sequence

from loguru import logger

from retail_sync.core.config import settings
from retail_sync.models.import_job import ACTIVE_STATUSES, ImportJob, JobStatus, JobStep
from retail_sync.services.job_events import JobEvent, JobEventHub, QueueSubscriber
from retail_sync.services.job_store import JobStore

RESTART_MESSAGE = "Server restarted while the import was running"


# -------------------------
# Errors
# -------------------------

class JobError(Exception):
    pass


class JobNotFoundError(JobError):
    pass


class JobStateError(JobError):
    pass


class JobCancelledError(JobError):
    """Raised inside a running import once its job has been cancelled."""


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


# -------------------------
# Registry
# -------------------------

class JobRegistry:
    """In-memory jobs that are active or inside their eviction grace period."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._jobs: dict[str, ImportJob] = {}

    def get(self, job_id: str) -> ImportJob | None:
        return self._jobs.get(job_id)

    def put(self, job: ImportJob) -> None:
        self._jobs[job.id] = job

    def pop(self, job_id: str) -> ImportJob | None:
        return self._jobs.pop(job_id, None)

    def values(self) -> list[ImportJob]:
        return list(self._jobs.values())

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


Mutation = Callable[[ImportJob], list[JobEvent]]


# -------------------------
# Service
# -------------------------

class ImportJobService:
    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        hub: JobEventHub,
        *,
        eviction_delay_s: float | None = None,
        cancel_eviction_delay_s: float | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._hub = hub
        self._eviction_delay_s = (
            eviction_delay_s if eviction_delay_s is not None else settings.JOB_EVICTION_DELAY_S
        )
        self._cancel_eviction_delay_s = (
            cancel_eviction_delay_s
            if cancel_eviction_delay_s is not None
            else settings.JOB_CANCEL_EVICTION_DELAY_S
        )
        self._eviction_tasks: set[asyncio.Task] = set()

    # ---- lifecycle ----

    def recover(self) -> int:
        """
        Startup scan. Jobs left ``running`` cannot be resumed mid-page, so they
        are closed as errors. Pending jobs are loaded back into the registry.
        """
        failed = 0
        for job in self._store.list_by_status([JobStatus.RUNNING, JobStatus.PENDING]):
            if job.status == JobStatus.RUNNING:
                now = _now()
                job.status = JobStatus.ERROR
                job.error_message = RESTART_MESSAGE
                job.updated_at = now
                job.completed_at = now
                self._store.save(job)
                failed += 1
                logger.warning(f"Job {job.id} ({job.domain}) marked as error after restart")
            else:
                self._registry.put(job)

        if failed:
            logger.info(f"Recovered import jobs: {failed} interrupted, {len(self._registry)} pending")
        return failed

    async def shutdown(self) -> None:
        for task in list(self._eviction_tasks):
            task.cancel()
        if self._eviction_tasks:
            await asyncio.gather(*self._eviction_tasks, return_exceptions=True)
        self._eviction_tasks.clear()

    # ---- queries ----

    def get_job(self, job_id: str) -> ImportJob:
        job = self._registry.get(job_id) or self._store.load(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def active_jobs(self) -> list[ImportJob]:
        jobs = [j for j in self._registry.values() if j.status in ACTIVE_STATUSES]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def history(self, limit: int = 50) -> list[ImportJob]:
        return self._store.history(limit)

    def is_cancelled(self, job_id: str) -> bool:
        job = self._registry.get(job_id)
        return job is None or job.status == JobStatus.CANCELLED

    # ---- mutations ----

    async def create_job(self, domain: str, label: str, steps: Sequence[tuple[str, str]]) -> ImportJob:
        now = _now()
        job = ImportJob(
            id=str(uuid.uuid4()),
            domain=domain,
            label=label,
            status=JobStatus.PENDING,
            steps=[JobStep(name=name, label=step_label) for name, step_label in steps],
            created_at=now,
            updated_at=now,
        )
        async with self._registry.lock:
            self._store.save(job)
            self._registry.put(job)

        logger.info(f"Job {job.id} created for domain {domain} ({len(job.steps)} steps)")
        return job

    async def start_job(self, job_id: str) -> ImportJob:
        def mutate(job: ImportJob) -> list[JobEvent]:
            if job.status != JobStatus.PENDING:
                raise JobStateError(f"Job {job.id} cannot start from status {job.status.value}")
            job.status = JobStatus.RUNNING
            return [JobEvent("job:started", {"jobId": job.id, "status": job.status.value})]

        return await self._mutate(job_id, mutate)

    async def update_step(self, job_id: str, step_name: str, processed: int, total: int) -> int | None:
        """Records step progress and returns the computed percentage."""
        pct: int | None = None

        def mutate(job: ImportJob) -> list[JobEvent]:
            nonlocal pct
            step = self._require_step(job, step_name)
            pct = step.percent
            if job.is_terminal or step.status in (JobStatus.COMPLETED, JobStatus.ERROR):
                return []

            step.status = JobStatus.RUNNING
            if total > 0:
                step.total = total
            step.processed = max(processed, 0)
            if step.total > 0:
                step.processed = min(step.processed, step.total)

            pct = step.percent
            return [JobEvent("step:progress", {
                "jobId": job.id,
                "step": step.name,
                "stepLabel": step.label,
                "processed": step.processed,
                "total": step.total,
                "pct": step.percent,
                "status": step.status.value,
            })]

        await self._mutate(job_id, mutate)
        return pct

    async def complete_step(self, job_id: str, step_name: str, total: int | None = None) -> ImportJob:
        def mutate(job: ImportJob) -> list[JobEvent]:
            step = self._require_step(job, step_name)
            if job.is_terminal or step.status in (JobStatus.COMPLETED, JobStatus.ERROR):
                return []

            if total is not None and total >= 0:
                step.total = total
            elif step.total <= 0:
                step.total = step.processed
            step.processed = step.total
            step.status = JobStatus.COMPLETED
            return [JobEvent("step:completed", {
                "jobId": job.id,
                "step": step.name,
                "stepLabel": step.label,
                "total": step.total,
                "pct": 100,
            })]

        return await self._mutate(job_id, mutate)

    async def fail_step(self, job_id: str, step_name: str, message: str) -> ImportJob:
        def mutate(job: ImportJob) -> list[JobEvent]:
            step = self._require_step(job, step_name)
            if job.is_terminal or step.status == JobStatus.COMPLETED:
                return []

            step.status = JobStatus.ERROR
            step.error = message
            return [JobEvent("step:error", {"jobId": job.id, "step": step.name, "errorMsg": message})]

        return await self._mutate(job_id, mutate)

    async def complete_job(self, job_id: str) -> ImportJob:
        def mutate(job: ImportJob) -> list[JobEvent]:
            if job.is_terminal:
                return []
            if job.status != JobStatus.RUNNING:
                raise JobStateError(f"Job {job.id} is not running")
            unfinished = [s.name for s in job.steps if s.status != JobStatus.COMPLETED]
            if unfinished:
                raise JobStateError(f"Job {job.id} has unfinished steps: {', '.join(unfinished)}")

            job.status = JobStatus.COMPLETED
            job.completed_at = _now()
            return [JobEvent("job:completed", {"jobId": job.id, "status": job.status.value})]

        return await self._mutate(job_id, mutate)

    async def fail_job(self, job_id: str, message: str) -> ImportJob:
        def mutate(job: ImportJob) -> list[JobEvent]:
            if job.is_terminal:
                return []
            job.status = JobStatus.ERROR
            job.error_message = message
            job.completed_at = _now()
            return [JobEvent("job:error", {
                "jobId": job.id,
                "status": job.status.value,
                "errorMsg": message,
            })]

        return await self._mutate(job_id, mutate)

    async def cancel_job(self, job_id: str) -> bool:
        """Idempotent. Returns False when the job was already finished."""
        if job_id not in self._registry:
            # finished and evicted, or never existed
            self.get_job(job_id)
            return False

        cancelled = False

        def mutate(job: ImportJob) -> list[JobEvent]:
            nonlocal cancelled
            if job.is_terminal:
                return []
            job.status = JobStatus.CANCELLED
            job.completed_at = _now()
            cancelled = True
            return [JobEvent("job:cancelled", {"jobId": job.id, "status": job.status.value})]

        await self._mutate(job_id, mutate)
        if cancelled:
            logger.info(f"Job {job_id} cancelled")
        return cancelled

    # ---- subscriptions ----

    async def subscribe(self, job_id: str, maxsize: int | None = None) -> QueueSubscriber:
        """
        Attaches a subscriber and queues the current snapshot as its first
        event. For a finished job the stream holds only the snapshot.
        """
        async with self._registry.lock:
            job = self.get_job(job_id)
            subscriber = QueueSubscriber(job_id, maxsize=maxsize)
            subscriber.send(JobEvent("job:snapshot", job.to_dict()))
            if job.is_terminal:
                subscriber.close()
            else:
                self._hub.add(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: QueueSubscriber) -> None:
        self._hub.remove(subscriber)
        subscriber.close()

    # ---- internals ----

    def _require_step(self, job: ImportJob, step_name: str) -> JobStep:
        step = job.step(step_name)
        if step is None:
            raise JobStateError(f"Job {job.id} has no step {step_name!r}")
        return step

    async def _mutate(self, job_id: str, mutate: Mutation) -> ImportJob:
        async with self._registry.lock:
            job = self._registry.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} is not active")

            events = mutate(job)
            if not events:
                return job

            job.updated_at = _now()
            self._store.save(job)
            for event in events:
                self._hub.broadcast(job_id, event)

            if job.is_terminal:
                delay = (
                    self._cancel_eviction_delay_s
                    if job.status == JobStatus.CANCELLED
                    else self._eviction_delay_s
                )
                self._schedule_eviction(job_id, delay)
        return job

    def _schedule_eviction(self, job_id: str, delay_s: float) -> None:
        task = asyncio.create_task(self._evict_later(job_id, delay_s))
        self._eviction_tasks.add(task)
        task.add_done_callback(self._eviction_tasks.discard)

    async def _evict_later(self, job_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        async with self._registry.lock:
            self._registry.pop(job_id)
            self._hub.close_job(job_id)
        logger.debug(f"Job {job_id} evicted from the active registry")
