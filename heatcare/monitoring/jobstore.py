"""
Job Store — delayed-job primitive the monitoring chains are built on.

The JobStore ABC decouples the controller from any specific queue backend.
Contract:
  - enqueue(job_id, payload, delay | repeat) returns a JobHandle
  - cancel(job_id) removes every pending (and in-flight) handle for the id
  - reschedule(job_id, delay, payload) moves the pending job in place
  - due jobs are delivered to the registered handler AT LEAST once
  - the store does not deduplicate: callers own the one-job-per-id protocol

InMemoryJobStore is the in-process implementation: a background asyncio
loop polls for due jobs and delivers them through a bounded worker pool,
retrying failures with exponential backoff.  Native fixed-period repeat is
supported; the next occurrence is created once the current one is done
(delivered, or out of retries), so a retrying job is never shadowed by
its own successor.

Scaling path: implement JobStore on a shared queue (Redis, Cloud Tasks)
and pass it to the controller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from heatcare.monitoring.errors import DuplicateIdentityViolation

logger = logging.getLogger("monitoring.jobstore")


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


Clock = Callable[[], datetime]


class RepeatSpec(BaseModel):
    """Fixed-period native repeat."""

    every_seconds: int

    @property
    def every(self) -> timedelta:
        return timedelta(seconds=self.every_seconds)


class JobHandle(BaseModel):
    """One scheduled occurrence of a job."""

    handle_id: str = Field(default_factory=_new_uuid)
    job_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    due_at: datetime
    # Slot this occurrence was scheduled for; retries move due_at, not this
    anchor_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    repeat: Optional[RepeatSpec] = None
    attempts: int = 0
    result: Optional[str] = None


# Type for the callback the store calls when a job is due
JobHandler = Callable[[JobHandle], Awaitable[Any]]


class JobStore(ABC):
    """Abstract delayed-job store keyed by job id."""

    @abstractmethod
    async def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        *,
        delay: timedelta | None = None,
        repeat: RepeatSpec | None = None,
    ) -> JobHandle:
        """Schedule a job.  Raises TransientStoreError if the store is unreachable."""

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Remove every pending handle for job_id.  True if anything was removed."""

    @abstractmethod
    async def cancel_handle(self, handle_id: str) -> bool:
        """Remove a single handle."""

    @abstractmethod
    async def pending(self, job_id: str) -> list[JobHandle]:
        """All pending handles for job_id, oldest first."""

    @abstractmethod
    async def is_live(self, handle_id: str) -> bool:
        """True while a handle is pending or being delivered and not cancelled."""

    @abstractmethod
    async def last_result(self, job_id: str) -> str | None:
        """Result recorded by the most recent completed delivery for job_id."""

    @abstractmethod
    def register_handler(self, handler: JobHandler) -> None:
        """Set the callback that receives due jobs."""

    async def find(self, job_id: str) -> JobHandle | None:
        """The single pending handle for job_id.  Raises DuplicateIdentityViolation."""
        handles = await self.pending(job_id)
        if len(handles) > 1:
            raise DuplicateIdentityViolation(job_id, handles)
        return handles[0] if handles else None

    @abstractmethod
    async def reschedule(
        self,
        job_id: str,
        delay: timedelta,
        payload: dict[str, Any] | None = None,
    ) -> JobHandle | None:
        """
        Move the single pending job for job_id to now + delay, optionally
        swapping its payload, as one atomic step.  None when nothing is pending.
        """

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class InMemoryJobStore(JobStore):
    """
    In-process JobStore driven by an asyncio polling loop.

    Usage:
        store = InMemoryJobStore(concurrency=3)
        store.register_handler(controller.on_fire)
        await store.start()

    Tests drive it deterministically with ``await store.run_due()``.
    """

    MAX_FAILED_HISTORY = 25

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        concurrency: int = 3,
        max_attempts: int = 5,
        backoff_seconds: float = 1.0,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._clock = clock or _utcnow
        self._semaphore = asyncio.Semaphore(concurrency)
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._poll_interval = poll_interval_seconds

        self._pending: dict[str, JobHandle] = {}
        self._in_flight: dict[str, JobHandle] = {}
        self._completed: dict[str, JobHandle] = {}
        self._failed: deque[JobHandle] = deque(maxlen=self.MAX_FAILED_HISTORY)
        self._handler: JobHandler | None = None
        self._deliveries: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    # ── Public API ──

    def register_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        """Start the polling loop."""
        if self._running:
            logger.warning("InMemoryJobStore already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(
            "InMemoryJobStore started (poll=%.1fs, attempts=%d)",
            self._poll_interval, self._max_attempts,
        )

    async def stop(self) -> None:
        """Stop polling and wait for in-flight deliveries."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._deliveries:
            await asyncio.gather(*self._deliveries, return_exceptions=True)
        logger.info("InMemoryJobStore stopped")

    async def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        *,
        delay: timedelta | None = None,
        repeat: RepeatSpec | None = None,
    ) -> JobHandle:
        now = self._clock()
        due_at = now + (delay or timedelta(0))
        handle = JobHandle(
            job_id=job_id,
            payload=dict(payload),
            due_at=due_at,
            anchor_at=due_at,
            created_at=now,
            repeat=repeat,
        )
        self._pending[handle.handle_id] = handle
        self._completed.pop(job_id, None)
        logger.debug("Enqueued %s due %s", job_id, handle.due_at.isoformat())
        return handle.model_copy()

    async def cancel(self, job_id: str) -> bool:
        removed = self._remove(job_id)
        if removed:
            logger.debug("Cancelled %d handle(s) for %s", removed, job_id)
        return removed > 0

    async def cancel_handle(self, handle_id: str) -> bool:
        if self._pending.pop(handle_id, None) is not None:
            return True
        return self._in_flight.pop(handle_id, None) is not None

    async def pending(self, job_id: str) -> list[JobHandle]:
        handles = [h for h in self._pending.values() if h.job_id == job_id]
        handles.sort(key=lambda h: h.created_at)
        return [h.model_copy() for h in handles]

    async def is_live(self, handle_id: str) -> bool:
        return handle_id in self._pending or handle_id in self._in_flight

    async def last_result(self, job_id: str) -> str | None:
        handle = self._completed.get(job_id)
        return handle.result if handle else None

    async def reschedule(
        self,
        job_id: str,
        delay: timedelta,
        payload: dict[str, Any] | None = None,
    ) -> JobHandle | None:
        found = await self.find(job_id)
        if found is None:
            return None
        handle = self._pending[found.handle_id]
        handle.due_at = self._clock() + delay
        handle.anchor_at = handle.due_at
        handle.attempts = 0
        if payload is not None:
            handle.payload = dict(payload)
        logger.debug("Rescheduled %s to %s", job_id, handle.due_at.isoformat())
        return handle.model_copy()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def failed_jobs(self) -> list[JobHandle]:
        return list(self._failed)

    async def run_due(self, *, wait: bool = True) -> int:
        """
        Deliver every job due at the current clock time.

        With wait=True (tests) this returns after all deliveries finish;
        the polling loop uses wait=False and lets the worker pool drain.
        """
        now = self._clock()
        due = sorted(
            (h for h in self._pending.values() if h.due_at <= now),
            key=lambda h: (h.due_at, h.created_at),
        )
        for handle in due:
            del self._pending[handle.handle_id]
            self._in_flight[handle.handle_id] = handle

        tasks = []
        for handle in due:
            task = asyncio.create_task(self._deliver(handle))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)
            tasks.append(task)

        if wait and tasks:
            await asyncio.gather(*tasks)
        return len(due)

    # ── Internal ──

    def _remove(self, job_id: str) -> int:
        removed = 0
        for table in (self._pending, self._in_flight):
            for handle_id in [h.handle_id for h in table.values() if h.job_id == job_id]:
                del table[handle_id]
                removed += 1
        self._completed.pop(job_id, None)
        return removed

    def _schedule_next_occurrence(self, handle: JobHandle) -> None:
        now = self._clock()
        every = handle.repeat.every
        next_due = (handle.anchor_at or handle.due_at) + every
        while next_due <= now:
            next_due += every
        nxt = JobHandle(
            job_id=handle.job_id,
            payload=dict(handle.payload),
            due_at=next_due,
            anchor_at=next_due,
            created_at=now,
            repeat=handle.repeat,
        )
        self._pending[nxt.handle_id] = nxt

    async def _deliver(self, handle: JobHandle) -> None:
        async with self._semaphore:
            handle.attempts += 1
            if self._handler is None:
                logger.warning("No handler registered — dropping job %s", handle.job_id)
                self._in_flight.pop(handle.handle_id, None)
                return
            try:
                result = await self._handler(handle)
            except Exception as exc:
                live = self._in_flight.pop(handle.handle_id, None) is not None
                if live and handle.attempts < self._max_attempts:
                    backoff = self._backoff * (2 ** (handle.attempts - 1))
                    handle.due_at = self._clock() + timedelta(seconds=backoff)
                    self._pending[handle.handle_id] = handle
                    logger.warning(
                        "Job %s failed (attempt %d/%d): %s — retrying in %.1fs",
                        handle.job_id, handle.attempts, self._max_attempts, exc, backoff,
                    )
                else:
                    self._failed.append(handle)
                    logger.error(
                        "Job %s failed after %d attempt(s): %s",
                        handle.job_id, handle.attempts, exc,
                        exc_info=True,
                    )
                    if live and handle.repeat is not None:
                        self._schedule_next_occurrence(handle)
                return

            live = self._in_flight.pop(handle.handle_id, None) is not None
            handle.result = result.value if isinstance(result, Enum) else (
                str(result) if result is not None else None
            )
            self._completed[handle.job_id] = handle
            # A handle cancelled mid-delivery ends its repeat series
            if live and handle.repeat is not None:
                self._schedule_next_occurrence(handle)

    async def _poll_loop(self) -> None:
        """Periodically deliver due jobs."""
        while self._running:
            try:
                await asyncio.sleep(self._poll_interval)
                if not self._running:
                    break
                await self.run_due(wait=False)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Job store poll error: %s", exc, exc_info=True)
