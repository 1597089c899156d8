"""Backoff and attempt budgets for failed artist syncs.

Delays grow by doubling from ``base_delay_seconds`` and stop at
``max_delay_seconds``. There is no jitter: successive delays for one job are
strictly increasing until the cap and constant afterwards.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from artistsync.models.sync_job import OVERDUE_SENTINEL, ErrorKind, SyncJob, SyncStatus


class RetryPolicy(BaseModel):
    """Retry policy shared by every source.

    Attributes:
        base_delay_seconds: Delay after the first failure
        max_delay_seconds: Cap on the exponential curve
        max_attempts: Consecutive failures before a job needs manual attention
        rate_limit_factor: Multiplier applied to the curve (and cap) for RateLimited
        not_found_max_attempts: Smaller budget for NotFoundUpstream
        mapping_retry_delay_seconds: Fixed delay between MappingError attempts
    """

    model_config = ConfigDict(frozen=True)

    base_delay_seconds: float = Field(default=60.0, gt=0)
    max_delay_seconds: float = Field(default=3600.0, gt=0)
    max_attempts: int = Field(default=5, ge=1)
    rate_limit_factor: float = Field(default=4.0, ge=1.0)
    not_found_max_attempts: int = Field(default=3, ge=1)
    mapping_retry_delay_seconds: float = Field(default=86400.0, gt=0)

    def delay_for(
        self,
        attempt_count: int,
        error_kind: Optional[ErrorKind] = None,
        retry_after_seconds: Optional[int] = None,
    ) -> timedelta:
        """Delay before the next attempt after `attempt_count` consecutive failures."""
        if attempt_count <= 0:
            return timedelta(0)

        if error_kind == ErrorKind.MAPPING_ERROR:
            return timedelta(seconds=self.mapping_retry_delay_seconds)

        delay = min(self.base_delay_seconds * (2 ** (attempt_count - 1)), self.max_delay_seconds)

        if error_kind == ErrorKind.RATE_LIMITED:
            delay *= self.rate_limit_factor
            if retry_after_seconds:
                delay = max(delay, float(retry_after_seconds))

        return timedelta(seconds=delay)

    def attempt_limit(self, error_kind: Optional[ErrorKind]) -> int:
        if error_kind == ErrorKind.NOT_FOUND_UPSTREAM:
            return min(self.not_found_max_attempts, self.max_attempts)
        return self.max_attempts

    def can_retry(self, job: SyncJob) -> bool:
        return job.attempt_count < self.attempt_limit(job.error_kind)

    def needs_attention(self, job: SyncJob) -> bool:
        return job.status == SyncStatus.FAILED and not self.can_retry(job)

    def next_attempt_at(self, job: SyncJob) -> Optional[datetime]:
        """When a failed job becomes eligible again, or None once its budget is spent."""
        if not self.can_retry(job):
            return None
        if job.last_synced is None:
            return OVERDUE_SENTINEL
        return job.last_synced + self.delay_for(job.attempt_count, job.error_kind, job.retry_after_seconds)
