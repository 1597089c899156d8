from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from artistsync.models.sync_job import ErrorKind, SyncJob, SyncStatus
from artistsync.services.mentor_linker import MappingError, MentorLinker
from artistsync.services.source_adapters import SourceAdapter, SourceAdapterError
from artistsync.services.sync_registry import SyncRegistry

logger = logging.getLogger(__name__)


@dataclass
class SyncAttemptResult:
    job_id: int
    status: SyncStatus
    mentor_id: int | None
    error_kind: ErrorKind | None
    error: str | None
    started_at: datetime
    completed_at: datetime
    # False when the job had already been moved on (e.g. by a restart sweep)
    recorded: bool = True


class _AttemptFailed(Exception):
    def __init__(self, kind: ErrorKind, message: str, retry_after_seconds: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.retry_after_seconds = retry_after_seconds


class _StaleAttempt(Exception):
    pass


class SyncExecutor:
    """Runs one sync attempt for a job the scheduler has moved to running.

    Outcomes are written back to the registry; errors from the adapter or
    the linker are recorded on the job and never raised to the caller.
    """

    def __init__(
        self,
        registry: SyncRegistry,
        adapter: SourceAdapter,
        linker: MentorLinker,
        *,
        attempt_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._adapter = adapter
        self._linker = linker
        self._timeout = attempt_timeout_seconds
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    async def execute(self, job: SyncJob) -> SyncAttemptResult:
        started_at = self._clock()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout

        try:
            raw_data = await self._fetch(job)
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise _AttemptFailed(ErrorKind.TIMEOUT, f"attempt exceeded {self._timeout:g}s deadline")
            return self._record_success(job, raw_data, started_at, remaining)
        except _AttemptFailed as exc:
            return self._record_failure(job, exc, started_at)
        except _StaleAttempt:
            logger.warning("Sync %s was no longer running when its attempt finished; result discarded", job.id)
            return SyncAttemptResult(
                job_id=job.id,
                status=SyncStatus.RUNNING,
                mentor_id=job.mentor_id,
                error_kind=None,
                error=None,
                started_at=started_at,
                completed_at=self._clock(),
                recorded=False,
            )

    async def _fetch(self, job: SyncJob) -> str:
        try:
            return await asyncio.wait_for(self._adapter.fetch(job.source, job.source_id), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise _AttemptFailed(ErrorKind.TIMEOUT, f"no response from {job.source.value} within {self._timeout:g}s") from exc
        except SourceAdapterError as exc:
            raise _AttemptFailed(exc.kind, str(exc), exc.retry_after_seconds) from exc
        except Exception as exc:
            logger.exception("Unexpected adapter failure for sync %s (%s:%s)", job.id, job.source.value, job.source_id)
            raise _AttemptFailed(ErrorKind.ADAPTER_UNAVAILABLE, f"Unexpected error: {exc!r}") from exc

    def _record_success(
        self, job: SyncJob, raw_data: str, started_at: datetime, remaining_seconds: float
    ) -> SyncAttemptResult:
        now = self._clock()
        try:
            # Profile upsert and job update commit together or not at all, and
            # waiting on another writer's lock counts against the attempt deadline.
            with self._registry.transaction(timeout=remaining_seconds) as conn:
                try:
                    mentor_id = self._linker.link(job, raw_data, conn=conn)
                except (MappingError, sqlite3.Error):
                    raise
                except Exception as exc:
                    logger.exception("Linker could not map payload for sync %s", job.id)
                    raise MappingError(f"Unexpected mapping failure: {exc!r}") from exc
                updated = self._registry.compare_and_set_status(
                    job.id,
                    SyncStatus.RUNNING,
                    SyncStatus.SUCCESS,
                    {
                        "last_synced": now,
                        "raw_data": raw_data,
                        "sync_error": None,
                        "attempt_count": 0,
                        "mentor_id": mentor_id,
                        "error_kind": None,
                        "retry_after_seconds": None,
                    },
                    conn=conn,
                )
                if not updated:
                    raise _StaleAttempt()
        except MappingError as exc:
            raise _AttemptFailed(ErrorKind.MAPPING_ERROR, str(exc)) from exc
        except sqlite3.OperationalError as exc:
            if "locked" not in str(exc) and "busy" not in str(exc):
                logger.exception("Could not record success for sync %s", job.id)
                raise _AttemptFailed(ErrorKind.ADAPTER_UNAVAILABLE, f"Unexpected error: {exc!r}") from exc
            raise _AttemptFailed(
                ErrorKind.TIMEOUT, f"mentor write did not complete within the {self._timeout:g}s deadline ({exc})"
            ) from exc
        except _StaleAttempt:
            raise
        except Exception as exc:
            logger.exception("Could not record success for sync %s", job.id)
            raise _AttemptFailed(ErrorKind.ADAPTER_UNAVAILABLE, f"Unexpected error: {exc!r}") from exc

        logger.info("Sync %s (%s:%s) succeeded; mentor %s", job.id, job.source.value, job.source_id, mentor_id)
        return SyncAttemptResult(
            job_id=job.id,
            status=SyncStatus.SUCCESS,
            mentor_id=mentor_id,
            error_kind=None,
            error=None,
            started_at=started_at,
            completed_at=now,
        )

    def _record_failure(self, job: SyncJob, exc: _AttemptFailed, started_at: datetime) -> SyncAttemptResult:
        now = self._clock()
        message = f"{exc.kind.value}: {exc}"
        attempt_count = job.attempt_count + 1

        try:
            recorded = self._registry.compare_and_set_status(
                job.id,
                SyncStatus.RUNNING,
                SyncStatus.FAILED,
                {
                    "last_synced": now,
                    "sync_error": message,
                    "attempt_count": attempt_count,
                    "error_kind": exc.kind,
                    "retry_after_seconds": exc.retry_after_seconds,
                },
            )
        except sqlite3.Error:
            # The scheduler's stale sweep returns the job to pending once its deadline has passed.
            logger.exception("Could not record failure for sync %s: %s", job.id, message)
            recorded = False

        if recorded:
            logger.warning("Sync %s (%s:%s) failed, attempt %s: %s", job.id, job.source.value, job.source_id, attempt_count, message)
        else:
            logger.warning("Sync %s was no longer running when its failure was recorded: %s", job.id, message)

        return SyncAttemptResult(
            job_id=job.id,
            status=SyncStatus.FAILED if recorded else SyncStatus.RUNNING,
            mentor_id=job.mentor_id,
            error_kind=exc.kind,
            error=message,
            started_at=started_at,
            completed_at=now,
            recorded=recorded,
        )
