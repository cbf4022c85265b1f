"""Issue API routes — list, create (with BEFORE photos), detail, status, priority, photos."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from app.api.deps import get_issue_repository, get_workflow_policy
from app.models.issue_schemas import (
    IssueCreated,
    IssueDetail,
    IssueListItem,
    IssuePriorityUpdate,
    IssueStatusUpdate,
    PhotoCreated,
)
from app.services.domain_errors import ValidationError
from app.services.repositories import SqlIssueRepository
from app.services.workflow_policy import IssueDraft, IssueWorkflowPolicy, PhotoUpload

router = APIRouter(prefix="/api/projects/{project_id}/issues", tags=["Issues"])
logger = logging.getLogger("defects-issues.api")


async def _to_upload(file: UploadFile) -> PhotoUpload:
    data = await file.read()
    return PhotoUpload(
        file_name=file.filename or "",
        content_type=file.content_type or "application/octet-stream",
        data=data,
    )


@router.get("", response_model=List[IssueListItem])
async def list_issues(
    project_id: str,
    floor_id: Optional[str] = Query(None, alias="floorId"),
    issues: SqlIssueRepository = Depends(get_issue_repository),
):
    """Issues of a project, newest first; ``?floorId=`` narrows to one floor."""
    found = await issues.find_by_project(project_id, floor_id or None)
    return [IssueListItem.from_domain(i) for i in found]


@router.post("", status_code=201, response_model=IssueCreated)
async def create_issue(
    project_id: str,
    floor_id: str = Form("", alias="floorId"),
    title: str = Form("", alias="title"),
    description: str = Form("", alias="description"),
    location_type: str = Form("", alias="locationType"),
    db_id: Optional[str] = Form(None, alias="dbId"),
    world_position_x: Optional[str] = Form(None, alias="worldPositionX"),
    world_position_y: Optional[str] = Form(None, alias="worldPositionY"),
    world_position_z: Optional[str] = Form(None, alias="worldPositionZ"),
    issue_type: Optional[str] = Form(None, alias="issueType"),
    priority: Optional[str] = Form(None, alias="priority"),
    reported_by: Optional[str] = Form(None, alias="reportedBy"),
    files: List[UploadFile] = File(default=[], alias="files"),
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    """
    Create an issue with its BEFORE photo(s) in one request (multipart form).

    Field validation runs before the photo rule; a request without any image
    is rejected before anything is stored.
    """
    missing = [
        name for name, value in (("floorId", floor_id), ("title", title), ("description", description))
        if not (value or "").strip()
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    if not location_type:
        raise ValidationError("Missing required field: locationType")

    draft = IssueDraft(
        project_id=project_id,
        floor_id=floor_id,
        title=title,
        description=description,
        location_type=location_type,
        db_id=db_id,
        world_position_x=world_position_x,
        world_position_y=world_position_y,
        world_position_z=world_position_z,
        issue_type=issue_type,
        priority=priority,
        reported_by=reported_by,
    )
    uploads = [await _to_upload(f) for f in files if f is not None and f.filename]
    issue = await policy.create_issue(draft, uploads)
    return IssueCreated(issue_id=issue.id)


@router.get("/{issue_id}", response_model=IssueDetail)
async def get_issue(
    project_id: str,
    issue_id: str,
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    issue = await policy.get_issue(issue_id, project_id)
    photos = await policy.list_photos(issue.id)
    return IssueDetail.from_domain(issue, photos)


@router.patch("/{issue_id}/status", response_model=IssueDetail)
async def update_issue_status(
    project_id: str,
    issue_id: str,
    req: IssueStatusUpdate,
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    """Status change gated by photo evidence (BEFORE always, AFTER for DONE)."""
    issue = await policy.change_status(issue_id, project_id, req.status)
    photos = await policy.list_photos(issue.id)
    return IssueDetail.from_domain(issue, photos)


@router.patch("/{issue_id}/priority", response_model=IssueDetail)
async def update_issue_priority(
    project_id: str,
    issue_id: str,
    req: IssuePriorityUpdate,
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    issue = await policy.change_priority(issue_id, project_id, req.priority)
    photos = await policy.list_photos(issue.id)
    return IssueDetail.from_domain(issue, photos)


@router.post("/{issue_id}/photos", status_code=201, response_model=PhotoCreated)
async def upload_photo(
    project_id: str,
    issue_id: str,
    file: Optional[UploadFile] = File(None, alias="file"),
    photo_phase: str = Form("", alias="photoPhase"),
    policy: IssueWorkflowPolicy = Depends(get_workflow_policy),
):
    if file is None:
        raise ValidationError("No file uploaded")
    if not photo_phase:
        raise ValidationError("photoPhase is required (BEFORE or AFTER)")

    photo = await policy.add_photo(issue_id, project_id, await _to_upload(file), photo_phase)
    return PhotoCreated(photo_id=photo.id, blob_key=photo.blob_key, photo_phase=photo.phase.value)
