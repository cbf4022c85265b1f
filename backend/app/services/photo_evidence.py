"""Photo aggregate — BEFORE/AFTER evidence attached to an issue."""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from app.services.domain_errors import ValidationError


class PhotoPhase(str, Enum):
    BEFORE = "BEFORE"   # condition when the issue was reported
    AFTER = "AFTER"     # condition after remediation


def parse_phase(value) -> PhotoPhase:
    if isinstance(value, PhotoPhase):
        return value
    try:
        return PhotoPhase(str(value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid photoPhase: {value}. Must be BEFORE or AFTER")


@dataclass(frozen=True)
class Photo:
    id: str
    issue_id: str
    blob_key: str
    phase: PhotoPhase
    uploaded_at: datetime

    @classmethod
    def create(
        cls,
        photo_id: str,
        issue_id: str,
        blob_key: str,
        phase: PhotoPhase,
        now: Optional[datetime] = None,
    ) -> "Photo":
        if not blob_key or not blob_key.strip():
            raise ValidationError("Photo blobKey must not be empty")
        return cls(
            id=photo_id,
            issue_id=issue_id,
            blob_key=blob_key,
            phase=parse_phase(phase),
            uploaded_at=now or datetime.now(timezone.utc),
        )

    def is_before(self) -> bool:
        return self.phase == PhotoPhase.BEFORE

    def is_after(self) -> bool:
        return self.phase == PhotoPhase.AFTER


def file_extension(file_name: Optional[str]) -> str:
    """Lower-case extension without the dot; ``bin`` when there is none."""
    ext = os.path.splitext(file_name or "")[-1].lower().lstrip(".")
    return ext or "bin"


def build_blob_key(project_id: str, issue_id: str, photo_id: str, file_name: Optional[str]) -> str:
    return f"projects/{project_id}/issues/{issue_id}/photos/{photo_id}.{file_extension(file_name)}"
