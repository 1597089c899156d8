"""Periodic admission of due artist syncs.

Each tick lists the registry, picks the jobs that are due, and hands them to
the executor in priority order while respecting a global cap and a
per-source cap on concurrent attempts. Admission is a compare-and-set from
pending to running, so concurrent ticks (or a racing manual refresh) can
never start the same job twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from artistsync.models.sync_job import OVERDUE_SENTINEL, Source, SyncJob, SyncStatus
from artistsync.services.retry_policy import RetryPolicy
from artistsync.services.sync_executor import SyncExecutor
from artistsync.services.sync_registry import SyncRegistry

logger = logging.getLogger(__name__)

_NEVER_SYNCED = datetime.min.replace(tzinfo=timezone.utc)
_SCHEDULABLE = (SyncStatus.PENDING, SyncStatus.SUCCESS, SyncStatus.FAILED)


class SyncScheduler:
    def __init__(
        self,
        registry: SyncRegistry,
        executor: SyncExecutor,
        policy: RetryPolicy,
        *,
        tick_interval_seconds: float = 30.0,
        max_global_concurrency: int = 8,
        max_per_source_concurrency: int = 2,
        attempt_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._policy = policy
        self._tick_interval = tick_interval_seconds
        self._max_global = max_global_concurrency
        self._max_per_source = max_per_source_concurrency
        self._attempt_timeout = timedelta(seconds=attempt_timeout_seconds)
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

        self._in_flight: dict[int, asyncio.Task] = {}
        self._per_source: Counter[Source] = Counter()
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

    # -------------------------
    # Due-ness
    # -------------------------

    def next_due_at(self, job: SyncJob) -> Optional[datetime]:
        """When `job` should next run, or None if it must not be scheduled."""
        if job.status == SyncStatus.RUNNING:
            return None
        if job.last_synced is None or job.last_synced <= OVERDUE_SENTINEL:
            return OVERDUE_SENTINEL
        if job.attempt_count > 0:
            return self._policy.next_attempt_at(job)
        return job.last_synced + job.sync_interval.to_timedelta()

    def is_due(self, job: SyncJob, now: datetime) -> bool:
        due_at = self.next_due_at(job)
        return due_at is not None and due_at <= now

    # -------------------------
    # Admission
    # -------------------------

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def in_flight_for(self, source: Source) -> int:
        return self._per_source[source]

    def _has_capacity(self, source: Source) -> bool:
        return len(self._in_flight) < self._max_global and self._per_source[source] < self._max_per_source

    async def tick(self) -> list[int]:
        """Admit every due job that fits under the caps; returns admitted ids."""
        now = self._clock()
        candidates = self._registry.list(statuses=_SCHEDULABLE)
        due = [job for job in candidates if self.is_due(job, now)]
        due.sort(key=lambda j: (j.priority, j.last_synced or _NEVER_SYNCED))

        admitted: list[int] = []
        for job in due:
            if self._stop_event is not None and self._stop_event.is_set():
                break
            if len(self._in_flight) >= self._max_global:
                break
            if not self._has_capacity(job.source):
                continue

            if job.status != SyncStatus.PENDING:
                # success/failed go back to pending once their next due time arrives
                if not self._registry.compare_and_set_status(job.id, job.status, SyncStatus.PENDING):
                    continue

            if not self._registry.compare_and_set_status(
                job.id, SyncStatus.PENDING, SyncStatus.RUNNING, {"started_at": now}
            ):
                logger.debug("Sync %s was admitted elsewhere; skipping", job.id)
                continue

            running = self._registry.get(job.id)
            self._dispatch(running)
            admitted.append(job.id)

        if admitted:
            logger.info("Admitted %s sync(s): %s", len(admitted), admitted)
        return admitted

    def _dispatch(self, job: SyncJob) -> None:
        self._per_source[job.source] += 1
        task = asyncio.create_task(self._run(job), name=f"artist-sync-{job.id}")
        self._in_flight[job.id] = task

    async def _run(self, job: SyncJob) -> None:
        try:
            await self._executor.execute(job)
        except Exception:
            logger.exception("Executor raised for sync %s", job.id)
        finally:
            self._in_flight.pop(job.id, None)
            self._per_source[job.source] -= 1

    async def drain(self) -> None:
        """Wait until every in-flight attempt has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # -------------------------
    # Recovery
    # -------------------------

    def recover_stale_jobs(self) -> list[int]:
        """Return jobs stuck in running past their deadline to pending.

        Attempts owned by this scheduler are left alone.
        """
        now = self._clock()
        recovered: list[int] = []
        for job in self._registry.list(status=SyncStatus.RUNNING):
            if job.id in self._in_flight:
                continue
            if job.started_at is not None and now - job.started_at < self._attempt_timeout:
                continue
            if self._registry.compare_and_set_status(job.id, SyncStatus.RUNNING, SyncStatus.PENDING):
                recovered.append(job.id)

        if recovered:
            logger.warning("Recovered %s stale running sync(s): %s", len(recovered), recovered)
        return recovered

    # -------------------------
    # Lifecycle
    # -------------------------

    async def start(self) -> None:
        if self._loop_task is not None:
            return
        self._stop_event = asyncio.Event()
        self.recover_stale_jobs()
        self._loop_task = asyncio.create_task(self._loop(), name="artist-sync-scheduler")
        logger.info(
            "Scheduler started (tick=%ss, global=%s, per-source=%s)",
            self._tick_interval,
            self._max_global,
            self._max_per_source,
        )

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                self.recover_stale_jobs()
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        """Stop admitting new attempts and wait for in-flight ones to finish."""
        if self._loop_task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        await self.drain()
        logger.info("Scheduler stopped")
