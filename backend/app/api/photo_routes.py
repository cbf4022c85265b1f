"""Photo API routes — time-limited URLs and signed content delivery."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from app.api.deps import get_photo_storage, get_workflow_policy
from app.models.issue_schemas import PhotoUrl
from app.services.photo_storage import LocalPhotoStorage, clamp_expiration
from app.services.workflow_policy import IssueWorkflowPolicy

router = APIRouter(prefix="/api/photos", tags=["Photos"])


@router.get("/{photo_id}/url", response_model=PhotoUrl)
async def get_photo_url(
    photo_id: str,
    expiration_minutes: Optional[int] = Query(None, alias="expirationMinutes"),
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    """Signed URL valid for ``expirationMinutes`` (default 60, capped at 7 days)."""
    minutes = clamp_expiration(expiration_minutes)
    url = await policy.get_photo_url(photo_id, minutes)
    return PhotoUrl(url=url, expiration_minutes=minutes)


@router.get("/content/{token}")
async def get_photo_content(token: str, storage: LocalPhotoStorage = Depends(get_photo_storage)):
    key = storage.resolve_token(token)
    data, content_type = await storage.read(key)
    return Response(
        content=data,
        media_type=content_type,
        headers={"Cache-Control": "private, max-age=300"},
    )
