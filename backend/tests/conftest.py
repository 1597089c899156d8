"""Shared fixtures for the artist sync engine tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from artistsync.db.session import init_db
from artistsync.models.sync_job import Source
from artistsync.services.mentor_linker import MentorLinker
from artistsync.services.retry_policy import RetryPolicy
from artistsync.services.sync_executor import SyncExecutor
from artistsync.services.sync_registry import SyncRegistry
from artistsync.services.sync_scheduler import SyncScheduler
from artistsync.services.sync_status import SyncStatusService


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """Source adapter returning scripted outcomes per (source, source_id).

    An outcome is a payload (dict or str), an exception instance to raise,
    or a float meaning "sleep this long, then return a default payload".
    """

    def __init__(self) -> None:
        self.outcomes: dict[tuple[Source, str], list[object]] = {}
        self.calls: list[tuple[Source, str]] = []
        self.active = 0
        self.max_active = 0
        self.gate: asyncio.Event | None = None

    def script(self, source: Source, source_id: str, *outcomes: object) -> None:
        self.outcomes.setdefault((source, source_id), []).extend(outcomes)

    async def fetch(self, source: Source, source_id: str) -> str:
        self.calls.append((source, source_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()

            queue = self.outcomes.get((source, source_id)) or []
            outcome = queue.pop(0) if queue else {"name": f"Artist {source_id}", "id": source_id}

            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, float):
                await asyncio.sleep(outcome)
                outcome = {"name": f"Artist {source_id}", "id": source_id}
            return outcome if isinstance(outcome, str) else json.dumps(outcome)
        finally:
            self.active -= 1


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "artist_sync.db"
    init_db(path)
    return path


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry(db_path: Path) -> SyncRegistry:
    return SyncRegistry(db_path)


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(
        base_delay_seconds=60,
        max_delay_seconds=600,
        max_attempts=5,
        rate_limit_factor=4,
        not_found_max_attempts=3,
        mapping_retry_delay_seconds=3600,
    )


@pytest.fixture
def linker(registry: SyncRegistry, clock: ManualClock) -> MentorLinker:
    return MentorLinker(registry, clock=clock)


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def executor(registry, adapter, linker, clock) -> SyncExecutor:
    return SyncExecutor(registry, adapter, linker, attempt_timeout_seconds=0.5, clock=clock)


@pytest.fixture
def scheduler(registry, executor, policy, clock) -> SyncScheduler:
    return SyncScheduler(
        registry,
        executor,
        policy,
        tick_interval_seconds=0.05,
        max_global_concurrency=4,
        max_per_source_concurrency=2,
        attempt_timeout_seconds=0.5,
        clock=clock,
    )


@pytest.fixture
def service(registry, linker, clock) -> SyncStatusService:
    return SyncStatusService(registry, linker, clock=clock)
