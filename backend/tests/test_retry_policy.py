"""Unit tests for backoff and attempt budgets."""

from datetime import datetime, timedelta, timezone

import pytest

from artistsync.models.sync_job import (
    OVERDUE_SENTINEL,
    ErrorKind,
    Source,
    SyncInterval,
    SyncJob,
    SyncStatus,
)
from artistsync.services.retry_policy import RetryPolicy

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _failed_job(attempts: int, kind: ErrorKind | None = ErrorKind.ADAPTER_UNAVAILABLE, **kwargs) -> SyncJob:
    return SyncJob(
        id=1,
        source=Source.SPOTIFY,
        source_id="abc",
        status=SyncStatus.FAILED,
        priority=5,
        sync_interval=SyncInterval.DAILY,
        created_at=T0,
        last_synced=T0,
        attempt_count=attempts,
        error_kind=kind,
        **kwargs,
    )


class TestDelay:
    def test_doubles_from_base(self, policy):
        assert policy.delay_for(1) == timedelta(seconds=60)
        assert policy.delay_for(2) == timedelta(seconds=120)
        assert policy.delay_for(3) == timedelta(seconds=240)

    def test_monotonic_until_cap_then_constant(self, policy):
        delays = [policy.delay_for(n, ErrorKind.TIMEOUT) for n in range(1, 9)]
        capped = timedelta(seconds=600)

        first_cap = delays.index(capped)
        for earlier, later in zip(delays[:first_cap], delays[1 : first_cap + 1]):
            assert later > earlier
        assert all(d == capped for d in delays[first_cap:])

    def test_rate_limited_waits_longer(self, policy):
        for n in range(1, 6):
            assert policy.delay_for(n, ErrorKind.RATE_LIMITED) > policy.delay_for(n, ErrorKind.ADAPTER_UNAVAILABLE)

    def test_rate_limited_honours_retry_after(self, policy):
        assert policy.delay_for(1, ErrorKind.RATE_LIMITED, retry_after_seconds=10_000) == timedelta(seconds=10_000)
        assert policy.delay_for(1, ErrorKind.RATE_LIMITED, retry_after_seconds=5) == timedelta(seconds=240)

    def test_mapping_error_uses_fixed_delay(self, policy):
        assert policy.delay_for(1, ErrorKind.MAPPING_ERROR) == timedelta(hours=1)
        assert policy.delay_for(4, ErrorKind.MAPPING_ERROR) == timedelta(hours=1)

    def test_no_failures_no_delay(self, policy):
        assert policy.delay_for(0) == timedelta(0)


class TestBudget:
    def test_default_budget(self, policy):
        assert policy.can_retry(_failed_job(4))
        assert not policy.can_retry(_failed_job(5))

    def test_not_found_budget_is_smaller(self, policy):
        assert policy.attempt_limit(ErrorKind.NOT_FOUND_UPSTREAM) == 3
        assert not policy.can_retry(_failed_job(3, ErrorKind.NOT_FOUND_UPSTREAM))
        assert policy.can_retry(_failed_job(3, ErrorKind.TIMEOUT))

    def test_needs_attention_only_when_failed_and_exhausted(self, policy):
        assert policy.needs_attention(_failed_job(5))
        assert not policy.needs_attention(_failed_job(2))

    def test_next_attempt_at(self, policy):
        assert policy.next_attempt_at(_failed_job(2)) == T0 + timedelta(seconds=120)
        assert policy.next_attempt_at(_failed_job(5)) is None

    def test_never_synced_job_is_overdue(self, policy):
        job = _failed_job(1)
        job.last_synced = None
        assert policy.next_attempt_at(job) == OVERDUE_SENTINEL


class TestValidation:
    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_rejects_factor_below_one(self):
        with pytest.raises(ValueError):
            RetryPolicy(rate_limit_factor=0.5)
