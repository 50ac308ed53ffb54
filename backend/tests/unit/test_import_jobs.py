from __future__ import annotations

import asyncio

import pytest

from retail_sync.models.import_job import ImportJob, JobStatus, JobStep
from retail_sync.services.import_jobs import (
    RESTART_MESSAGE,
    ImportJobService,
    JobNotFoundError,
    JobStateError,
)
from retail_sync.services.job_events import JobEvent, QueueSubscriber

STEPS = [("secoes", "Sections"), ("marcas", "Brands")]


async def _running_job(job_service: ImportJobService) -> ImportJob:
    job = await job_service.create_job("products", "Products", STEPS)
    await job_service.start_job(job.id)
    return job


async def _drain(subscriber: QueueSubscriber) -> list[JobEvent]:
    return await asyncio.wait_for(_collect(subscriber), timeout=1)


async def _collect(subscriber: QueueSubscriber) -> list[JobEvent]:
    return [event async for event in subscriber.events()]


# -------------------------
# Lifecycle
# -------------------------

async def test_created_job_is_pending_and_persisted(job_service, job_store) -> None:
    job = await job_service.create_job("products", "Products", STEPS)

    assert job.status == JobStatus.PENDING
    assert [s.name for s in job.steps] == ["secoes", "marcas"]
    assert all(s.status == JobStatus.PENDING for s in job.steps)

    stored = job_store.load(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert job_service.get_job(job.id).id == job.id
    assert [j.id for j in job_service.active_jobs()] == [job.id]


async def test_start_requires_pending(job_service) -> None:
    job = await _running_job(job_service)

    with pytest.raises(JobStateError):
        await job_service.start_job(job.id)


async def test_progress_percentage(job_service) -> None:
    job = await _running_job(job_service)

    assert await job_service.update_step(job.id, "secoes", 50, 100) == 50
    assert await job_service.update_step(job.id, "secoes", 100, 100) == 99

    await job_service.complete_step(job.id, "secoes")
    step = job_service.get_job(job.id).step("secoes")
    assert step.status == JobStatus.COMPLETED
    assert step.percent == 100
    assert step.processed == 100


async def test_unknown_total_has_no_percentage(job_service) -> None:
    job = await _running_job(job_service)

    assert await job_service.update_step(job.id, "secoes", 10, 0) is None

    step = job_service.get_job(job.id).step("secoes")
    assert step.status == JobStatus.RUNNING
    assert step.processed == 10


async def test_processed_is_clamped_to_total(job_service) -> None:
    job = await _running_job(job_service)

    await job_service.update_step(job.id, "secoes", 150, 100)

    assert job_service.get_job(job.id).step("secoes").processed == 100


async def test_unknown_step_is_rejected(job_service) -> None:
    job = await _running_job(job_service)

    with pytest.raises(JobStateError):
        await job_service.update_step(job.id, "nope", 1, 1)


async def test_complete_job_requires_every_step(job_service) -> None:
    job = await _running_job(job_service)
    await job_service.complete_step(job.id, "secoes", total=3)

    with pytest.raises(JobStateError):
        await job_service.complete_job(job.id)

    await job_service.complete_step(job.id, "marcas", total=0)
    finished = await job_service.complete_job(job.id)

    assert finished.status == JobStatus.COMPLETED
    assert finished.completed_at is not None


async def test_complete_job_requires_running(job_service) -> None:
    job = await job_service.create_job("products", "Products", [])

    with pytest.raises(JobStateError):
        await job_service.complete_job(job.id)


async def test_failure_is_persisted(job_service, job_store) -> None:
    job = await _running_job(job_service)

    await job_service.fail_step(job.id, "secoes", "HTTP 400")
    await job_service.fail_job(job.id, "HTTP 400")

    stored = job_store.load(job.id)
    assert stored.status == JobStatus.ERROR
    assert stored.error_message == "HTTP 400"
    assert stored.completed_at is not None
    assert stored.step("secoes").status == JobStatus.ERROR
    assert stored.step("secoes").error == "HTTP 400"
    assert stored.step("marcas").status == JobStatus.PENDING


async def test_every_mutation_is_persisted(job_service, job_store) -> None:
    job = await _running_job(job_service)

    await job_service.update_step(job.id, "secoes", 7, 20)

    stored = job_store.load(job.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.step("secoes").processed == 7
    assert stored.step("secoes").total == 20


async def test_mutations_after_finish_are_ignored(job_service) -> None:
    job = await _running_job(job_service)
    await job_service.fail_job(job.id, "boom")

    await job_service.update_step(job.id, "secoes", 5, 10)
    await job_service.complete_step(job.id, "secoes")

    current = job_service.get_job(job.id)
    assert current.status == JobStatus.ERROR
    assert current.step("secoes").status == JobStatus.PENDING


async def test_state_is_stored_before_subscribers_hear_about_it(job_service, job_store, event_hub) -> None:
    seen: list[tuple[str, str]] = []

    class StoreProbe(QueueSubscriber):
        def send(self, event: JobEvent) -> None:
            stored = job_store.load(self.job_id)
            seen.append((event.event, stored.status.value))
            super().send(event)

    job = await job_service.create_job("products", "Products", [("secoes", "Sections")])
    event_hub.add(StoreProbe(job.id, maxsize=10))

    await job_service.start_job(job.id)
    await job_service.complete_step(job.id, "secoes", total=1)
    await job_service.complete_job(job.id)

    assert seen == [
        ("job:started", "running"),
        ("step:completed", "running"),
        ("job:completed", "completed"),
    ]


# -------------------------
# Recovery
# -------------------------

def test_recover_fails_running_and_keeps_pending(job_store, job_registry, event_hub) -> None:
    for job_id, status in (("j1", JobStatus.RUNNING), ("j2", JobStatus.PENDING)):
        job_store.save(ImportJob(
            id=job_id,
            domain="people",
            label="People",
            status=status,
            steps=[JobStep(name="clientes", label="Customers")],
            created_at="2024-01-01T00:00:00+00:00",
            updated_at="2024-01-01T00:00:00+00:00",
        ))

    service = ImportJobService(job_store, job_registry, event_hub)
    assert service.recover() == 1

    j1 = job_store.load("j1")
    assert j1.status == JobStatus.ERROR
    assert j1.error_message == RESTART_MESSAGE
    assert j1.completed_at is not None
    assert "j1" not in job_registry

    assert "j2" in job_registry
    assert job_store.load("j2").status == JobStatus.PENDING


# -------------------------
# Subscriptions
# -------------------------

async def test_subscriber_receives_snapshot_then_events_in_order(job_service) -> None:
    job = await job_service.create_job("products", "Products", [("secoes", "Sections")])
    subscriber = await job_service.subscribe(job.id)

    await job_service.start_job(job.id)
    await job_service.update_step(job.id, "secoes", 1, 2)
    await job_service.complete_step(job.id, "secoes")
    await job_service.complete_job(job.id)

    events = await _drain(subscriber)

    assert [e.event for e in events] == [
        "job:snapshot",
        "job:started",
        "step:progress",
        "step:completed",
        "job:completed",
    ]
    assert events[0].data["status"] == "pending"
    assert events[2].data["pct"] == 50
    assert events[3].data["pct"] == 100


async def test_stalled_subscriber_is_dropped(job_service, event_hub) -> None:
    job = await job_service.create_job("products", "Products", STEPS)
    healthy = await job_service.subscribe(job.id)
    stalled = await job_service.subscribe(job.id, maxsize=1)
    assert event_hub.subscriber_count(job.id) == 2

    await job_service.start_job(job.id)

    assert event_hub.subscriber_count(job.id) == 1
    assert stalled.closed
    assert not healthy.closed


async def test_subscribe_to_finished_job_yields_snapshot_only(job_service) -> None:
    job = await _running_job(job_service)
    await job_service.fail_job(job.id, "boom")

    subscriber = await job_service.subscribe(job.id)
    events = await _drain(subscriber)

    assert [e.event for e in events] == ["job:snapshot"]
    assert events[0].data["status"] == "error"


async def test_subscribe_unknown_job(job_service) -> None:
    with pytest.raises(JobNotFoundError):
        await job_service.subscribe("missing")


# -------------------------
# Cancellation and eviction
# -------------------------

async def test_cancel_is_idempotent(job_service) -> None:
    job = await _running_job(job_service)

    assert await job_service.cancel_job(job.id) is True
    assert job_service.is_cancelled(job.id)
    assert await job_service.cancel_job(job.id) is False

    await asyncio.sleep(0.05)
    assert await job_service.cancel_job(job.id) is False
    assert job_service.get_job(job.id).status == JobStatus.CANCELLED


async def test_cancel_unknown_job(job_service) -> None:
    with pytest.raises(JobNotFoundError):
        await job_service.cancel_job("missing")


async def test_finished_jobs_are_evicted(job_service, job_registry) -> None:
    job = await job_service.create_job("products", "Products", [])
    await job_service.start_job(job.id)
    await job_service.complete_job(job.id)
    assert job.id in job_registry

    await asyncio.sleep(0.05)

    assert job.id not in job_registry
    assert job_service.active_jobs() == []
    assert job_service.get_job(job.id).status == JobStatus.COMPLETED
    assert [j.id for j in job_service.history()] == [job.id]
