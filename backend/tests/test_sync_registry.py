"""Tests for the SQLite-backed sync registry."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from artistsync.models.sync_job import ErrorKind, Source, SyncInterval, SyncStatus
from artistsync.services.sync_registry import (
    DuplicateKey,
    InvalidTransition,
    JobNotFound,
    SyncRegistry,
)

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _insert(registry: SyncRegistry, source_id: str, priority: int = 5, offset: int = 0, source: Source = Source.SPOTIFY) -> int:
    return registry.insert(
        source,
        source_id,
        SyncInterval.DAILY,
        priority,
        created_at=T0 + timedelta(seconds=offset),
    )


class TestInsertAndGet:
    def test_insert_creates_pending_job(self, registry):
        job_id = _insert(registry, "abc")
        job = registry.get(job_id)

        assert job.status == SyncStatus.PENDING
        assert job.source == Source.SPOTIFY
        assert job.source_id == "abc"
        assert job.attempt_count == 0
        assert job.last_synced is None
        assert job.mentor_id is None
        assert job.created_at == T0

    def test_get_unknown_id_raises(self, registry):
        with pytest.raises(JobNotFound):
            registry.get(999)

    def test_duplicate_active_key_rejected(self, registry):
        _insert(registry, "abc")
        with pytest.raises(DuplicateKey):
            _insert(registry, "abc")

    def test_same_source_id_on_other_source_allowed(self, registry):
        _insert(registry, "abc", source=Source.SPOTIFY)
        _insert(registry, "abc", source=Source.GENIUS)
        assert len(registry.list()) == 2

    def test_key_free_again_once_not_active(self, registry):
        job_id = _insert(registry, "abc")
        registry.compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.RUNNING)
        registry.compare_and_set_status(job_id, SyncStatus.RUNNING, SyncStatus.FAILED, {"attempt_count": 1})

        # Only pending/running rows hold the key
        _insert(registry, "abc")

    def test_find_by_key(self, registry):
        job_id = _insert(registry, "abc")
        assert registry.find_by_key(Source.SPOTIFY, "abc").id == job_id
        assert registry.find_by_key(Source.LASTFM, "abc") is None


class TestList:
    def test_orders_by_priority_then_created_at(self, registry):
        late_high = _insert(registry, "a", priority=1, offset=10)
        early_low = _insert(registry, "b", priority=5, offset=0)
        early_high = _insert(registry, "c", priority=1, offset=0)

        assert [j.id for j in registry.list()] == [early_high, late_high, early_low]

    def test_filters_by_status_and_source(self, registry):
        a = _insert(registry, "a")
        _insert(registry, "b", source=Source.GENIUS)
        registry.compare_and_set_status(a, SyncStatus.PENDING, SyncStatus.RUNNING)

        assert [j.id for j in registry.list(status=SyncStatus.RUNNING)] == [a]
        assert [j.source for j in registry.list(source=Source.GENIUS)] == [Source.GENIUS]
        assert registry.list(status=SyncStatus.RUNNING, source=Source.GENIUS) == []

    def test_filters_by_several_statuses(self, registry):
        a = _insert(registry, "a")
        b = _insert(registry, "b", offset=1)
        c = _insert(registry, "c", offset=2)
        registry.compare_and_set_status(b, SyncStatus.PENDING, SyncStatus.RUNNING)
        registry.compare_and_set_status(c, SyncStatus.PENDING, SyncStatus.RUNNING)
        registry.compare_and_set_status(c, SyncStatus.RUNNING, SyncStatus.FAILED)

        jobs = registry.list(statuses=(SyncStatus.PENDING, SyncStatus.FAILED))
        assert [j.id for j in jobs] == [a, c]

    def test_limit(self, registry):
        for i in range(5):
            _insert(registry, f"id-{i}", offset=i)
        assert len(registry.list(limit=3)) == 3


class TestCompareAndSetStatus:
    def test_applies_transition_and_fields(self, registry):
        job_id = _insert(registry, "abc")
        assert registry.compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.RUNNING, {"started_at": T0})
        assert registry.compare_and_set_status(
            job_id,
            SyncStatus.RUNNING,
            SyncStatus.FAILED,
            {"sync_error": "RateLimited: slow down", "attempt_count": 1, "error_kind": ErrorKind.RATE_LIMITED, "last_synced": T0},
        )

        job = registry.get(job_id)
        assert job.status == SyncStatus.FAILED
        assert job.sync_error == "RateLimited: slow down"
        assert job.error_kind == ErrorKind.RATE_LIMITED
        assert job.last_synced == T0
        assert job.started_at == T0

    def test_mismatched_expected_status_is_noop(self, registry):
        job_id = _insert(registry, "abc")
        assert not registry.compare_and_set_status(job_id, SyncStatus.RUNNING, SyncStatus.SUCCESS, {"attempt_count": 9})

        job = registry.get(job_id)
        assert job.status == SyncStatus.PENDING
        assert job.attempt_count == 0

    def test_illegal_transition_raises(self, registry):
        job_id = _insert(registry, "abc")
        with pytest.raises(InvalidTransition):
            registry.compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.SUCCESS)

    def test_unknown_field_raises(self, registry):
        job_id = _insert(registry, "abc")
        with pytest.raises(ValueError, match="Unknown sync job fields"):
            registry.compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.RUNNING, {"source": "genius"})

    def test_concurrent_callers_exactly_one_wins(self, registry, db_path):
        """N threads race pending -> running; exactly one succeeds."""
        job_id = _insert(registry, "abc")

        def attempt(_):
            return SyncRegistry(db_path).compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.RUNNING)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(attempt, range(32)))

        assert results.count(True) == 1
        assert registry.get(job_id).status == SyncStatus.RUNNING

    def test_transaction_rolls_back_on_error(self, registry):
        job_id = _insert(registry, "abc")
        with pytest.raises(RuntimeError):
            with registry.transaction() as conn:
                registry.compare_and_set_status(job_id, SyncStatus.PENDING, SyncStatus.RUNNING, conn=conn)
                raise RuntimeError("boom")

        assert registry.get(job_id).status == SyncStatus.PENDING

    def test_key_collision_returns_false_and_logs(self, registry, caplog):
        old = _insert(registry, "abc")
        registry.compare_and_set_status(old, SyncStatus.PENDING, SyncStatus.RUNNING)
        registry.compare_and_set_status(old, SyncStatus.RUNNING, SyncStatus.FAILED)
        _insert(registry, "abc", offset=1)

        with caplog.at_level(logging.DEBUG, logger="artistsync.services.sync_registry"):
            assert not registry.compare_and_set_status(old, SyncStatus.FAILED, SyncStatus.PENDING)

        assert registry.get(old).status == SyncStatus.FAILED
        assert "rejected by key constraint" in caplog.text
