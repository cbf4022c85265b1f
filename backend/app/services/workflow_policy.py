"""
workflow_policy.py — Issue workflow with photo-evidence enforcement.

Composes the Issue lifecycle with the photo rule:

  - an issue is never created without at least one BEFORE photo
  - any status change needs at least one BEFORE photo on record
  - moving to DONE additionally needs at least one AFTER photo

Evidence is checked before the lifecycle operation runs, so a request that
lacks photos is rejected with EvidencePolicyViolation even when the edge
itself would be legal.  Illegal edges still surface as InvalidStatusTransition
from the aggregate.

Creation is all-or-nothing at application level: if any step after the
issue row is written fails, the stored blobs and the issue are removed and
the original error is re-raised.

Collaborators are duck-typed async repositories (see repositories.py) and a
photo storage (see photo_storage.py).
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from app.config import MAX_PHOTO_BYTES, PHOTO_URL_DEFAULT_MINUTES
from app.services.domain_errors import (
    EvidencePolicyViolation,
    NotFoundError,
    ValidationError,
)
from app.services.perf_monitor import timed_async
from app.services.issue_lifecycle import (
    Issue,
    IssuePriority,
    IssueStatus,
    location_from_fields,
    parse_priority,
    parse_status,
)
from app.services.photo_evidence import Photo, PhotoPhase, build_blob_key, parse_phase

logger = logging.getLogger("defects-issues")


@dataclass
class PhotoUpload:
    """A single uploaded file as received from the client."""
    file_name: str
    content_type: str
    data: bytes


@dataclass
class IssueDraft:
    """Flat creation request; the location is validated into a Location on create."""
    project_id: str
    floor_id: str
    title: str
    description: str
    location_type: Optional[str]
    db_id: Optional[str] = None
    world_position_x: Optional[float] = None
    world_position_y: Optional[float] = None
    world_position_z: Optional[float] = None
    issue_type: Optional[str] = None
    priority: Optional[str] = None
    reported_by: Optional[str] = None


def _new_id() -> str:
    return str(uuid.uuid4())


class IssueWorkflowPolicy:
    """Single enforcement point for the photo-evidence rule."""

    def __init__(
        self,
        issues,
        photos,
        storage,
        id_factory: Callable[[], str] = _new_id,
        max_photo_bytes: int = MAX_PHOTO_BYTES,
    ):
        self.issues = issues
        self.photos = photos
        self.storage = storage
        self._new_id = id_factory
        self.max_photo_bytes = max_photo_bytes

    # ── Commands ────────────────────────────────────────────────────────────

    @timed_async("create_issue")
    async def create_issue(self, draft: IssueDraft, uploads: List[PhotoUpload]) -> Issue:
        """Create an OPEN issue together with its BEFORE photo(s)."""
        location = location_from_fields(
            draft.location_type,
            db_id=draft.db_id,
            x=draft.world_position_x,
            y=draft.world_position_y,
            z=draft.world_position_z,
        )
        issue = Issue.create(
            issue_id=self._new_id(),
            project_id=draft.project_id,
            floor_id=draft.floor_id,
            title=draft.title,
            description=draft.description,
            location=location,
            priority=parse_priority(draft.priority) if draft.priority else IssuePriority.MEDIUM,
            issue_type=draft.issue_type,
            reported_by=draft.reported_by,
        )

        uploads = list(uploads or [])
        if not uploads:
            raise EvidencePolicyViolation(
                PhotoPhase.BEFORE,
                "At least one BEFORE photo is required to create an issue",
            )
        for upload in uploads:
            self._check_upload(upload)

        stored_keys: List[str] = []
        await self.issues.save(issue)
        try:
            for upload in uploads:
                photo_id = self._new_id()
                photo = Photo.create(
                    photo_id=photo_id,
                    issue_id=issue.id,
                    blob_key=build_blob_key(issue.project_id, issue.id, photo_id, upload.file_name),
                    phase=PhotoPhase.BEFORE,
                )
                await self.storage.upload(photo.blob_key, upload.data, upload.content_type)
                stored_keys.append(photo.blob_key)
                await self.photos.save(photo)
        except Exception:
            logger.warning(
                "Issue creation failed after persistence, rolling back",
                extra={"issue_id": issue.id, "project_id": issue.project_id},
                exc_info=True,
            )
            await self._compensate(issue.id, stored_keys)
            raise

        logger.info(
            f"Issue created with {len(uploads)} BEFORE photo(s)",
            extra={"issue_id": issue.id, "project_id": issue.project_id},
        )
        return issue

    @timed_async("change_status")
    async def change_status(self, issue_id: str, project_id: str, requested) -> Issue:
        """Move an issue to ``requested`` once the evidence rule is satisfied."""
        target = parse_status(requested)
        issue = await self._load(issue_id, project_id)

        before_count = await self.photos.count_by_phase(issue.id, PhotoPhase.BEFORE)
        if before_count < 1:
            raise EvidencePolicyViolation(
                PhotoPhase.BEFORE,
                "At least one BEFORE photo is required before changing status",
            )
        if target == IssueStatus.DONE:
            after_count = await self.photos.count_by_phase(issue.id, PhotoPhase.AFTER)
            if after_count < 1:
                raise EvidencePolicyViolation(
                    PhotoPhase.AFTER,
                    "At least one AFTER photo is required to mark an issue DONE",
                )

        updated = issue.transition_to(target)
        await self.issues.save(updated)
        logger.info(
            f"Issue status {issue.status.value} -> {updated.status.value}",
            extra={"issue_id": issue.id, "project_id": project_id},
        )
        return updated

    @timed_async("add_photo")
    async def add_photo(self, issue_id: str, project_id: str, upload: PhotoUpload, phase) -> Photo:
        """Attach a BEFORE or AFTER photo to an existing issue."""
        phase = parse_phase(phase)
        self._check_upload(upload)
        issue = await self._load(issue_id, project_id)

        photo_id = self._new_id()
        photo = Photo.create(
            photo_id=photo_id,
            issue_id=issue.id,
            blob_key=build_blob_key(issue.project_id, issue.id, photo_id, upload.file_name),
            phase=phase,
        )
        await self.storage.upload(photo.blob_key, upload.data, upload.content_type)
        try:
            await self.photos.save(photo)
        except Exception:
            await self._delete_blob(photo.blob_key)
            raise

        logger.info(
            f"{phase.value} photo added",
            extra={"issue_id": issue.id, "project_id": project_id},
        )
        return photo

    @timed_async("change_priority")
    async def change_priority(self, issue_id: str, project_id: str, priority) -> Issue:
        target = parse_priority(priority)
        issue = await self._load(issue_id, project_id)
        updated = issue.change_priority(target)
        await self.issues.save(updated)
        return updated

    # ── Queries ─────────────────────────────────────────────────────────────

    async def get_issue(self, issue_id: str, project_id: str) -> Issue:
        return await self._load(issue_id, project_id)

    async def list_photos(self, issue_id: str) -> List[Photo]:
        """Photos of an issue, newest first."""
        photos = await self.photos.find_by_issue(issue_id)
        return sorted(photos, key=lambda p: p.uploaded_at, reverse=True)

    async def get_photo_url(self, photo_id: str, expiration_minutes: int = PHOTO_URL_DEFAULT_MINUTES) -> str:
        photo = await self.photos.find_by_id(photo_id)
        if photo is None:
            raise NotFoundError("Photo", photo_id)
        return await self.storage.get_signed_url(photo.blob_key, expiration_minutes)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _load(self, issue_id: str, project_id: str) -> Issue:
        issue = await self.issues.find_by_id(issue_id)
        # An issue from another project is indistinguishable from a missing one
        if issue is None or issue.project_id != project_id:
            raise NotFoundError("Issue", issue_id)
        return issue

    def _check_upload(self, upload: PhotoUpload) -> None:
        if not upload.data:
            raise ValidationError(f"Uploaded file '{upload.file_name}' is empty")
        if not (upload.content_type or "").lower().startswith("image/"):
            raise ValidationError(
                f"Uploaded file '{upload.file_name}' is not an image ({upload.content_type})"
            )
        if len(upload.data) > self.max_photo_bytes:
            raise ValidationError(
                f"Uploaded file '{upload.file_name}' exceeds {self.max_photo_bytes} bytes"
            )

    async def _compensate(self, issue_id: str, blob_keys: List[str]) -> None:
        for key in blob_keys:
            await self._delete_blob(key)
        try:
            for photo in await self.photos.find_by_issue(issue_id):
                await self.photos.delete(photo.id)
            await self.issues.delete(issue_id)
        except Exception as e:
            logger.error(f"Rollback of issue {issue_id} incomplete: {e}")

    async def _delete_blob(self, key: str) -> None:
        try:
            await self.storage.delete(key)
        except Exception as e:
            logger.error(f"Failed to delete orphaned blob {key}: {e}")
