from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from artistsync.services.mentor_linker import MentorNotFound
from artistsync.services.sync_status import SyncStatusService

router = APIRouter(prefix="/api/mentors", tags=["mentors"])


class MentorProfileResponse(BaseModel):
    id: int
    name: str
    originSource: str
    originSourceId: str
    fields: dict[str, Any]
    createdAt: str
    lastUpdated: str


def get_status_service(request: Request) -> SyncStatusService:
    return request.app.state.status_service


@router.get("/{mentor_id}", response_model=MentorProfileResponse)
def get_mentor(mentor_id: int, service: SyncStatusService = Depends(get_status_service)) -> MentorProfileResponse:
    try:
        profile = service.get_mentor(mentor_id)
    except MentorNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return MentorProfileResponse(
        id=profile.id,
        name=profile.name,
        originSource=profile.origin_source,
        originSourceId=profile.origin_source_id,
        fields=profile.fields,
        createdAt=profile.created_at.isoformat(),
        lastUpdated=profile.last_updated.isoformat(),
    )
