"""
Per-job multicast of progress events.

Each subscriber owns a bounded queue. Delivery never blocks the job: a
subscriber whose queue is full or closed is dropped from the set and the
remaining subscribers keep receiving events.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from loguru import logger

from retail_sync.core.config import settings

TERMINAL_EVENTS = frozenset({"job:completed", "job:error", "job:cancelled"})


@dataclass
class JobEvent:
    event: str
    data: dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now(tz=timezone.utc).isoformat())

    @property
    def is_terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS


class SubscriberClosedError(Exception):
    pass


class QueueSubscriber:
    """One live observer of a job (e.g. one SSE connection)."""

    def __init__(self, job_id: str, maxsize: int | None = None) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[JobEvent | None] = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else settings.SUBSCRIBER_QUEUE_SIZE
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: JobEvent) -> None:
        if self._closed:
            raise SubscriberClosedError(f"Subscriber for job {self.job_id} is closed")
        # raises asyncio.QueueFull for a stalled consumer
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # the end-of-stream marker must always fit
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[JobEvent]:
        """Yields events until a terminal one (inclusive) or until closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if event.is_terminal:
                self._closed = True
                return


class JobEventHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, set[QueueSubscriber]] = {}

    def add(self, subscriber: QueueSubscriber) -> None:
        self._subscribers.setdefault(subscriber.job_id, set()).add(subscriber)
        logger.debug(f"Subscriber attached to job {subscriber.job_id}")

    def remove(self, subscriber: QueueSubscriber) -> None:
        subscribers = self._subscribers.get(subscriber.job_id)
        if subscribers is None:
            return
        subscribers.discard(subscriber)
        if not subscribers:
            del self._subscribers[subscriber.job_id]
        logger.debug(f"Subscriber detached from job {subscriber.job_id}")

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    def broadcast(self, job_id: str, event: JobEvent) -> int:
        subscribers = list(self._subscribers.get(job_id, ()))
        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.send(event)
                delivered += 1
            except (asyncio.QueueFull, SubscriberClosedError) as exc:
                logger.warning(f"Dropping subscriber of job {job_id}: {exc!r}")
                self.remove(subscriber)
                subscriber.close()
        return delivered

    def close_job(self, job_id: str) -> None:
        for subscriber in self._subscribers.pop(job_id, set()):
            subscriber.close()


def format_sse(event: JobEvent) -> str:
    data = json.dumps(event.data, ensure_ascii=False, default=str)
    return f"event: {event.event}\ndata: {data}\n\n"
