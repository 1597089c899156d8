from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from artistsync.db.session import DEFAULT_BUSY_TIMEOUT_SECONDS, get_connection
from artistsync.models.sync_job import (
    ErrorKind,
    Source,
    SyncInterval,
    SyncJob,
    SyncStatus,
    is_allowed_transition,
)

logger = logging.getLogger(__name__)


class SyncRegistryError(Exception):
    pass


class DuplicateKey(SyncRegistryError):
    def __init__(self, source: Source, source_id: str) -> None:
        super().__init__(f"An active sync already exists for {source.value}:{source_id}")
        self.source = source
        self.source_id = source_id


class JobNotFound(SyncRegistryError):
    def __init__(self, job_id: int) -> None:
        super().__init__(f"Artist sync {job_id} not found")
        self.job_id = job_id


class InvalidTransition(SyncRegistryError):
    pass


# Attribute name -> column for every field a status transition may write.
_MUTABLE_COLUMNS = {
    "mentor_id": "mentor_id",
    "last_synced": "last_synced",
    "sync_error": "sync_error",
    "raw_data": "raw_data",
    "attempt_count": "attempt_count",
    "error_kind": "error_kind",
    "retry_after_seconds": "retry_after_seconds",
    "started_at": "started_at",
}

_SELECT = """
    SELECT id, source, source_id, mentor_id, status, priority, sync_interval,
           last_synced, sync_error, raw_data, attempt_count, error_kind,
           retry_after_seconds, started_at, created_at
    FROM artist_syncs
"""


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (SyncStatus, ErrorKind, Source, SyncInterval)):
        return value.value
    return value


def _row_to_job(row: sqlite3.Row) -> SyncJob:
    return SyncJob(
        id=row["id"],
        source=Source(row["source"]),
        source_id=row["source_id"],
        mentor_id=row["mentor_id"],
        status=SyncStatus(row["status"]),
        priority=row["priority"],
        sync_interval=SyncInterval(row["sync_interval"]),
        last_synced=_parse_ts(row["last_synced"]),
        sync_error=row["sync_error"],
        raw_data=row["raw_data"],
        attempt_count=row["attempt_count"],
        error_kind=ErrorKind(row["error_kind"]) if row["error_kind"] else None,
        retry_after_seconds=row["retry_after_seconds"],
        started_at=_parse_ts(row["started_at"]),
        created_at=_parse_ts(row["created_at"]),
    )


class SyncRegistry:
    """Durable store of artist sync jobs.

    Every state change goes through compare_and_set_status, a single
    conditional UPDATE, so two callers can never advance the same job from
    the same status.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path

    def connect(self, timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=timeout)

    @contextmanager
    def transaction(self, timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and rolls back on error.

        `timeout` bounds how long a write waits for another writer's lock.
        """
        connection = self.connect(timeout)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def insert(
        self,
        source: Source,
        source_id: str,
        sync_interval: SyncInterval,
        priority: int,
        *,
        created_at: datetime | None = None,
    ) -> int:
        timestamp = created_at or datetime.now(tz=timezone.utc)
        try:
            with self.transaction() as connection:
                cursor = connection.execute(
                    """
                    INSERT INTO artist_syncs (source, source_id, status, priority, sync_interval, attempt_count, created_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (source.value, source_id, SyncStatus.PENDING.value, priority, sync_interval.value, timestamp.isoformat()),
                )
                return cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise DuplicateKey(source, source_id) from exc

    def get(self, job_id: int, *, conn: sqlite3.Connection | None = None) -> SyncJob:
        if conn is not None:
            row = conn.execute(_SELECT + " WHERE id = ?", (job_id,)).fetchone()
        else:
            with self.transaction() as connection:
                row = connection.execute(_SELECT + " WHERE id = ?", (job_id,)).fetchone()

        if not row:
            raise JobNotFound(job_id)
        return _row_to_job(row)

    def find_by_key(self, source: Source, source_id: str) -> SyncJob | None:
        with self.transaction() as connection:
            row = connection.execute(
                _SELECT + " WHERE source = ? AND source_id = ? ORDER BY id DESC LIMIT 1",
                (source.value, source_id),
            ).fetchone()
        return _row_to_job(row) if row else None

    def list(
        self,
        status: SyncStatus | None = None,
        source: Source | None = None,
        limit: int | None = None,
        *,
        statuses: Iterable[SyncStatus] | None = None,
    ) -> list[SyncJob]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if statuses is not None:
            wanted = [s.value for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in wanted)})")
            params.extend(wanted)
        if source is not None:
            clauses.append("source = ?")
            params.append(source.value)

        query = _SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY priority ASC, created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.transaction() as connection:
            rows = connection.execute(query, params).fetchall()
        return [_row_to_job(row) for row in rows]

    def compare_and_set_status(
        self,
        job_id: int,
        expected: SyncStatus,
        new: SyncStatus,
        fields: dict[str, Any] | None = None,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Move a job from `expected` to `new`, writing `fields` alongside.

        Returns False without touching the row when the stored status is not
        `expected`. Pass `conn` to make the update part of an open transaction.
        """
        if not is_allowed_transition(expected, new):
            raise InvalidTransition(f"{expected.value} -> {new.value} is not a valid sync transition")

        fields = fields or {}
        unknown = set(fields) - set(_MUTABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown sync job fields: {', '.join(sorted(unknown))}")

        assignments = ["status = ?"]
        params: list[Any] = [new.value]
        for name, value in fields.items():
            assignments.append(f"{_MUTABLE_COLUMNS[name]} = ?")
            params.append(_to_db(value))
        params.extend([job_id, expected.value])

        statement = f"UPDATE artist_syncs SET {', '.join(assignments)} WHERE id = ? AND status = ?"

        try:
            if conn is not None:
                cursor = conn.execute(statement, params)
            else:
                with self.transaction() as connection:
                    cursor = connection.execute(statement, params)
        except sqlite3.IntegrityError as exc:
            # Moving back to pending collided with another active job for the key.
            logger.debug("Sync %s %s -> %s rejected by key constraint: %s", job_id, expected.value, new.value, exc)
            return False
        return cursor.rowcount == 1
