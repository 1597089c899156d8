from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum


class Source(str, Enum):
    SPOTIFY = "spotify"
    GENIUS = "genius"
    LASTFM = "lastfm"


class SyncStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class SyncInterval(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def to_timedelta(self) -> timedelta:
        return _INTERVAL_DURATIONS[self]


_INTERVAL_DURATIONS = {
    SyncInterval.HOURLY: timedelta(hours=1),
    SyncInterval.DAILY: timedelta(days=1),
    SyncInterval.WEEKLY: timedelta(weeks=1),
    SyncInterval.MONTHLY: timedelta(days=30),
}


class ErrorKind(str, Enum):
    ADAPTER_UNAVAILABLE = "AdapterUnavailable"
    RATE_LIMITED = "RateLimited"
    NOT_FOUND_UPSTREAM = "NotFoundUpstream"
    TIMEOUT = "Timeout"
    MAPPING_ERROR = "MappingError"


# pending -> pending is a manual refresh; running -> pending is the restart sweep.
# success -> success and failed -> failed only rewrite metadata such as a manual mentor link.
ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.RUNNING, SyncStatus.PENDING}),
    SyncStatus.RUNNING: frozenset({SyncStatus.SUCCESS, SyncStatus.FAILED, SyncStatus.PENDING}),
    SyncStatus.SUCCESS: frozenset({SyncStatus.PENDING, SyncStatus.SUCCESS}),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING, SyncStatus.FAILED}),
}

# Written as lastSynced by a manual refresh; older than any interval or backoff.
OVERDUE_SENTINEL = datetime(1970, 1, 1, tzinfo=timezone.utc)


def is_allowed_transition(current: SyncStatus, new: SyncStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


@dataclass
class SyncJob:
    id: int
    source: Source
    source_id: str
    status: SyncStatus
    priority: int
    sync_interval: SyncInterval
    created_at: datetime
    mentor_id: int | None = None
    last_synced: datetime | None = None
    sync_error: str | None = None
    raw_data: str | None = None
    attempt_count: int = 0
    error_kind: ErrorKind | None = None
    retry_after_seconds: int | None = None
    started_at: datetime | None = None

    @property
    def key(self) -> tuple[Source, str]:
        return self.source, self.source_id
