from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from artistsync.models.mentor_profile import MentorProfile
from artistsync.models.sync_job import OVERDUE_SENTINEL, Source, SyncInterval, SyncJob, SyncStatus
from artistsync.services.mentor_linker import MentorLinker
from artistsync.services.sync_registry import DuplicateKey, SyncRegistry

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10

# How many times a racing status change is re-read before giving up.
_CAS_RETRIES = 5

# Clears failure state and makes the scheduler treat the job as overdue.
_RESET_FIELDS = {
    "attempt_count": 0,
    "sync_error": None,
    "error_kind": None,
    "retry_after_seconds": None,
    "last_synced": OVERDUE_SENTINEL,
}


class SyncStatusError(Exception):
    pass


class InvalidSyncRequest(SyncStatusError):
    pass


class SyncConflict(SyncStatusError):
    def __init__(self, existing: SyncJob | None) -> None:
        super().__init__("This artist is already being synced")
        self.existing = existing


class AlreadyInFlight(SyncStatusError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Artist sync {job_id} is already running")
        self.job_id = job_id


class SyncStatusService:
    """Read/query surface plus enqueue and manual refresh for the dashboard."""

    def __init__(
        self,
        registry: SyncRegistry,
        linker: MentorLinker,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._linker = linker
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def enqueue(
        self,
        source: Source | str,
        source_id: str,
        sync_interval: SyncInterval | str = SyncInterval.DAILY,
        priority: int = 5,
    ) -> SyncJob:
        source, source_id, sync_interval = self._validate(source, source_id, sync_interval, priority)

        existing = self._registry.find_by_key(source, source_id)
        if existing is not None:
            if existing.status != SyncStatus.FAILED:
                raise SyncConflict(existing)
            # Re-adopt the failed job instead of creating a second one for the key
            if not self._registry.compare_and_set_status(existing.id, SyncStatus.FAILED, SyncStatus.PENDING, _RESET_FIELDS):
                raise SyncConflict(self._registry.find_by_key(source, source_id))
            logger.info("Re-enqueued failed sync %s (%s:%s)", existing.id, source.value, source_id)
            return self._registry.get(existing.id)

        try:
            job_id = self._registry.insert(source, source_id, sync_interval, priority, created_at=self._clock())
        except DuplicateKey as exc:
            raise SyncConflict(self._registry.find_by_key(source, source_id)) from exc

        logger.info("Enqueued sync %s (%s:%s, %s, priority %s)", job_id, source.value, source_id, sync_interval.value, priority)
        return self._registry.get(job_id)

    def manual_refresh(self, job_id: int) -> SyncJob:
        """Make a job due immediately, clearing its failure state.

        Raises JobNotFound for unknown ids and AlreadyInFlight while the job
        is running.
        """
        for _ in range(_CAS_RETRIES):
            job = self._registry.get(job_id)
            if job.status == SyncStatus.RUNNING:
                raise AlreadyInFlight(job_id)
            if self._registry.compare_and_set_status(job_id, job.status, SyncStatus.PENDING, _RESET_FIELDS):
                logger.info("Manual refresh accepted for sync %s (was %s)", job_id, job.status.value)
                return self._registry.get(job_id)

        # Only reachable when the status keeps changing underneath us
        raise AlreadyInFlight(job_id)

    def get(self, job_id: int) -> SyncJob:
        return self._registry.get(job_id)

    def list(
        self,
        status: SyncStatus | None = None,
        source: Source | None = None,
        limit: int | None = None,
    ) -> list[SyncJob]:
        return self._registry.list(status=status, source=source, limit=limit)

    def link_mentor(self, job_id: int, mentor_id: int) -> SyncJob:
        """Point a job at an existing mentor profile."""
        self._linker.get_profile(mentor_id)
        for _ in range(_CAS_RETRIES):
            job = self._registry.get(job_id)
            if job.status == SyncStatus.RUNNING:
                raise AlreadyInFlight(job_id)
            # Same-status update: only the link changes
            updated = self._registry.compare_and_set_status(job_id, job.status, job.status, {"mentor_id": mentor_id})
            if updated:
                logger.info("Linked sync %s to mentor %s", job_id, mentor_id)
                return self._registry.get(job_id)
        raise AlreadyInFlight(job_id)

    def get_mentor(self, mentor_id: int) -> MentorProfile:
        return self._linker.get_profile(mentor_id)

    def _validate(
        self,
        source: Source | str,
        source_id: str,
        sync_interval: SyncInterval | str,
        priority: int,
    ) -> tuple[Source, str, SyncInterval]:
        try:
            source = Source(source)
        except ValueError as exc:
            raise InvalidSyncRequest(f"Unknown source '{source}'") from exc
        try:
            sync_interval = SyncInterval(sync_interval)
        except ValueError as exc:
            raise InvalidSyncRequest(f"Unknown sync interval '{sync_interval}'") from exc

        source_id = (source_id or "").strip()
        if not source_id:
            raise InvalidSyncRequest("sourceId must not be empty")
        if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise InvalidSyncRequest(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}")
        return source, source_id, sync_interval
