"""Maps raw provider payloads onto mentor profiles.

Linking is an upsert: a job keeps pointing at the same profile for its whole
life, and each successful sync merges the latest fields into it. Fields the
provider omitted this time are kept from earlier syncs.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable

from artistsync.models.mentor_profile import MentorProfile
from artistsync.models.sync_job import Source, SyncJob
from artistsync.services.sync_registry import SyncRegistry

logger = logging.getLogger(__name__)


class MappingError(Exception):
    pass


class MentorNotFound(Exception):
    def __init__(self, mentor_id: int) -> None:
        super().__init__(f"Mentor {mentor_id} not found")
        self.mentor_id = mentor_id


# -------------------------
# Per-source normalization
# -------------------------

def _first_image(images: Any) -> str | None:
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, dict):
            return first.get("url")
    return None


def _as_count(value: Any) -> int | None:
    """Last.fm sends counts as strings; anything unparseable is dropped."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _normalize_spotify(payload: dict[str, Any], source_id: str) -> dict[str, Any]:
    followers = payload.get("followers")
    external = payload.get("external_urls")
    return {
        "name": payload.get("name"),
        "genres": payload.get("genres") if isinstance(payload.get("genres"), list) else None,
        "profileImage": _first_image(payload.get("images")),
        "popularity": payload.get("popularity"),
        "followers": followers.get("total") if isinstance(followers, dict) else None,
        "url": external.get("spotify") if isinstance(external, dict) else None,
        "spotifyId": payload.get("id") or source_id,
    }


def _normalize_genius(payload: dict[str, Any], source_id: str) -> dict[str, Any]:
    # API responses wrap the artist as {"response": {"artist": {...}}}
    response = payload.get("response")
    if isinstance(response, dict) and isinstance(response.get("artist"), dict):
        payload = response["artist"]

    description = payload.get("description")
    bio = description.get("plain") if isinstance(description, dict) else description
    return {
        "name": payload.get("name"),
        "profileImage": payload.get("image_url"),
        "bio": bio if isinstance(bio, str) and bio.strip() else None,
        "url": payload.get("url"),
        "followers": payload.get("followers_count"),
        "geniusId": str(payload.get("id") or source_id),
    }


def _normalize_lastfm(payload: dict[str, Any], source_id: str) -> dict[str, Any]:
    if isinstance(payload.get("artist"), dict):
        payload = payload["artist"]

    tags = payload.get("tags")
    tag_list = tags.get("tag") if isinstance(tags, dict) else None
    genres = [t["name"] for t in tag_list if isinstance(t, dict) and t.get("name")] if isinstance(tag_list, list) else None

    images = payload.get("image")
    image = None
    if isinstance(images, list):
        # Last.fm lists sizes small -> mega; keep the largest with a URL
        for item in reversed(images):
            if isinstance(item, dict) and item.get("#text"):
                image = item["#text"]
                break

    bio = payload.get("bio")
    stats = payload.get("stats")
    listeners = stats.get("listeners") if isinstance(stats, dict) else None
    return {
        "name": payload.get("name"),
        "genres": genres or None,
        "profileImage": image,
        "bio": bio.get("summary") if isinstance(bio, dict) else None,
        "url": payload.get("url"),
        "listeners": _as_count(listeners),
        "lastfmMbid": payload.get("mbid") or source_id,
    }


_NORMALIZERS: dict[Source, Callable[[dict[str, Any], str], dict[str, Any]]] = {
    Source.SPOTIFY: _normalize_spotify,
    Source.GENIUS: _normalize_genius,
    Source.LASTFM: _normalize_lastfm,
}


def normalize_payload(source: Source, source_id: str, raw_data: str) -> dict[str, Any]:
    """Parse `raw_data` and return the non-empty normalized profile fields."""
    try:
        payload = json.loads(raw_data)
    except (TypeError, ValueError) as exc:
        raise MappingError(f"{source.value} payload is not valid JSON") from exc

    if not isinstance(payload, dict):
        raise MappingError(f"{source.value} payload must be a JSON object, got {type(payload).__name__}")

    fields = {k: v for k, v in _NORMALIZERS[source](payload, source_id).items() if v is not None}

    name = fields.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MappingError(f"{source.value} payload is missing required field 'name'")
    fields["name"] = name.strip()
    return fields


# -------------------------
# Linker
# -------------------------

def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _row_to_profile(row: sqlite3.Row) -> MentorProfile:
    fields: dict[str, Any] = {}
    raw = row["fields_json"]
    if raw:
        parsed = json.loads(raw)
        fields = parsed if isinstance(parsed, dict) else {}

    return MentorProfile(
        id=row["id"],
        name=row["name"],
        origin_source=row["origin_source"],
        origin_source_id=row["origin_source_id"],
        created_at=_parse_ts(row["created_at"]),
        last_updated=_parse_ts(row["last_updated"]),
        fields=fields,
    )


class MentorLinker:
    def __init__(
        self,
        registry: SyncRegistry,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))

    def link(self, job: SyncJob, raw_data: str, *, conn: sqlite3.Connection | None = None) -> int:
        """Upsert the mentor profile for `job` and return its id.

        Raises MappingError when the payload cannot be mapped; nothing is
        written in that case.
        """
        fields = normalize_payload(job.source, job.source_id, raw_data)

        if conn is not None:
            return self._upsert(conn, job, fields)
        with self._registry.transaction() as connection:
            return self._upsert(connection, job, fields)

    def _find_existing(self, conn: sqlite3.Connection, job: SyncJob) -> MentorProfile | None:
        if job.mentor_id is not None:
            row = conn.execute("SELECT * FROM mentor_profiles WHERE id = ?", (job.mentor_id,)).fetchone()
            if row:
                return _row_to_profile(row)
            logger.warning("Mentor %s linked to sync %s no longer exists; relinking", job.mentor_id, job.id)

        row = conn.execute(
            "SELECT * FROM mentor_profiles WHERE origin_source = ? AND origin_source_id = ?",
            (job.source.value, job.source_id),
        ).fetchone()
        return _row_to_profile(row) if row else None

    def _upsert(self, conn: sqlite3.Connection, job: SyncJob, fields: dict[str, Any]) -> int:
        now = self._clock().isoformat()
        existing = self._find_existing(conn, job)

        if existing is None:
            cursor = conn.execute(
                """
                INSERT INTO mentor_profiles (name, origin_source, origin_source_id, fields_json, created_at, last_updated)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    fields["name"],
                    job.source.value,
                    job.source_id,
                    json.dumps(fields, ensure_ascii=False, sort_keys=True),
                    now,
                    now,
                ),
            )
            logger.info("Created mentor %s for %s:%s", cursor.lastrowid, job.source.value, job.source_id)
            return cursor.lastrowid

        merged = {**existing.fields, **fields}
        conn.execute(
            "UPDATE mentor_profiles SET name = ?, fields_json = ?, last_updated = ? WHERE id = ?",
            (merged["name"], json.dumps(merged, ensure_ascii=False, sort_keys=True), now, existing.id),
        )
        return existing.id

    def get_profile(self, mentor_id: int) -> MentorProfile:
        with self._registry.transaction() as connection:
            row = connection.execute("SELECT * FROM mentor_profiles WHERE id = ?", (mentor_id,)).fetchone()
        if not row:
            raise MentorNotFound(mentor_id)
        return _row_to_profile(row)
