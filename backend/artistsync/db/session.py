from __future__ import annotations

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).resolve().parent / "artist_sync.db"
DEFAULT_BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(
    db_path: Path | str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    # Concurrent writers wait up to `timeout` on the file lock instead of failing immediately.
    connection = sqlite3.connect(db_path, timeout=timeout)
    connection.row_factory = sqlite3.Row
    return connection


def init_db(db_path: Path | str = DEFAULT_DB_PATH) -> None:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    with get_connection(db_path) as connection:
        connection.execute("PRAGMA journal_mode=WAL")
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS artist_syncs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                source_id TEXT NOT NULL,
                mentor_id INTEGER,
                status TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 5,
                sync_interval TEXT NOT NULL DEFAULT 'daily',
                last_synced TEXT,
                sync_error TEXT,
                raw_data TEXT,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                error_kind TEXT,
                retry_after_seconds INTEGER,
                started_at TEXT,
                created_at TEXT NOT NULL
            )
            """
        )

        # At most one pending/running job per (source, source_id)
        connection.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_artist_syncs_active_key
            ON artist_syncs (source, source_id)
            WHERE status IN ('pending', 'running')
            """
        )
        connection.execute(
            "CREATE INDEX IF NOT EXISTS ix_artist_syncs_status ON artist_syncs (status)"
        )

        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS mentor_profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                origin_source TEXT NOT NULL,
                origin_source_id TEXT NOT NULL,
                fields_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                UNIQUE(origin_source, origin_source_id)
            )
            """
        )
        connection.commit()
