from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from artistsync.models.sync_job import Source, SyncJob, SyncStatus
from artistsync.services.mentor_linker import MentorNotFound
from artistsync.services.retry_policy import RetryPolicy
from artistsync.services.sync_registry import JobNotFound
from artistsync.services.sync_status import (
    AlreadyInFlight,
    InvalidSyncRequest,
    SyncConflict,
    SyncStatusService,
)

router = APIRouter(prefix="/api/artist-syncs", tags=["artist-syncs"])


# -------------------------
# API models (match dashboard expectations)
# -------------------------

class ArtistSyncResponse(BaseModel):
    id: int
    source: str
    sourceId: str
    mentorId: Optional[int] = None
    syncStatus: Literal["pending", "running", "success", "failed"]
    priority: int
    syncInterval: Literal["hourly", "daily", "weekly", "monthly"]
    lastSynced: Optional[str] = None
    syncError: Optional[str] = None
    rawData: Optional[str] = None
    createdAt: str
    attemptCount: int = 0
    errorKind: Optional[str] = None
    needsAttention: bool = False


class ArtistSyncCreateRequest(BaseModel):
    source: Literal["spotify", "genius", "lastfm"]
    sourceId: str = Field(..., min_length=1, examples=["4Z8W4fKeB5YxbusRsdQVPb"])
    syncInterval: Literal["hourly", "daily", "weekly", "monthly"] = "daily"
    priority: int = Field(default=5, ge=1, le=10)


# -------------------------
# Dependencies / helpers
# -------------------------

def get_status_service(request: Request) -> SyncStatusService:
    return request.app.state.status_service


def get_retry_policy(request: Request) -> RetryPolicy:
    return request.app.state.retry_policy


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def to_response(job: SyncJob, policy: RetryPolicy) -> ArtistSyncResponse:
    return ArtistSyncResponse(
        id=job.id,
        source=job.source.value,
        sourceId=job.source_id,
        mentorId=job.mentor_id,
        syncStatus=job.status.value,
        priority=job.priority,
        syncInterval=job.sync_interval.value,
        lastSynced=_iso(job.last_synced),
        syncError=job.sync_error,
        rawData=job.raw_data,
        createdAt=_iso(job.created_at),
        attemptCount=job.attempt_count,
        errorKind=job.error_kind.value if job.error_kind else None,
        needsAttention=policy.needs_attention(job),
    )


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# -------------------------
# Routes
# -------------------------

@router.post("", response_model=ArtistSyncResponse)
def create_artist_sync(
    payload: ArtistSyncCreateRequest,
    service: SyncStatusService = Depends(get_status_service),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> ArtistSyncResponse:
    try:
        job = service.enqueue(payload.source, payload.sourceId, payload.syncInterval, payload.priority)
    except InvalidSyncRequest as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except SyncConflict as exc:
        existing = to_response(exc.existing, policy).model_dump() if exc.existing else None
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": str(exc), "existingSync": existing},
        ) from exc
    return to_response(job, policy)


@router.get("", response_model=list[ArtistSyncResponse])
def list_artist_syncs(
    status_filter: Optional[SyncStatus] = Query(default=None, alias="status"),
    source: Optional[Source] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1),
    service: SyncStatusService = Depends(get_status_service),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> list[ArtistSyncResponse]:
    jobs = service.list(status=status_filter, source=source, limit=limit)
    return [to_response(job, policy) for job in jobs]


@router.get("/{job_id}", response_model=ArtistSyncResponse)
def get_artist_sync(
    job_id: int,
    service: SyncStatusService = Depends(get_status_service),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> ArtistSyncResponse:
    try:
        job = service.get(job_id)
    except JobNotFound as exc:
        raise _not_found(exc) from exc
    return to_response(job, policy)


@router.post("/{job_id}/refresh", response_model=ArtistSyncResponse, status_code=status.HTTP_202_ACCEPTED)
def refresh_artist_sync(
    job_id: int,
    service: SyncStatusService = Depends(get_status_service),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> ArtistSyncResponse:
    try:
        job = service.manual_refresh(job_id)
    except JobNotFound as exc:
        raise _not_found(exc) from exc
    except AlreadyInFlight as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job, policy)


@router.post("/{job_id}/link/{mentor_id}", response_model=ArtistSyncResponse)
def link_artist_sync(
    job_id: int,
    mentor_id: int,
    service: SyncStatusService = Depends(get_status_service),
    policy: RetryPolicy = Depends(get_retry_policy),
) -> ArtistSyncResponse:
    try:
        job = service.link_mentor(job_id, mentor_id)
    except (JobNotFound, MentorNotFound) as exc:
        raise _not_found(exc) from exc
    except AlreadyInFlight as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return to_response(job, policy)
