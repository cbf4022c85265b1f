"""
test_workflow_policy.py — Photo-evidence rules around the issue lifecycle.

Tests cover:
  - create_issue: BEFORE photo requirement, upload validation, blob keys,
    compensation when a later step fails
  - change_status: BEFORE required for any change, AFTER required for DONE,
    evidence checked before the edge, illegal edges still rejected
  - add_photo / change_priority / get_photo_url
  - project scoping (issue from another project is NotFound)

In-memory repositories and storage from conftest.py; no database required.
"""

import asyncio

import pytest

from app.services.domain_errors import (
    EvidencePolicyViolation,
    InvalidStatusTransition,
    NotFoundError,
    ValidationError,
)
from app.services.issue_lifecycle import IssuePriority, IssueStatus
from app.services.photo_evidence import PhotoPhase
from app.services.workflow_policy import PhotoUpload


def _run(coro):
    return asyncio.run(coro)


def _png(name="after.png"):
    return PhotoUpload(name, "image/png", b"\x89PNG-fake")


class TestCreateIssue:
    def test_creates_open_issue_with_before_photo(self, policy, draft, jpeg_upload, photo_repo, storage):
        issue = _run(policy.create_issue(draft, [jpeg_upload]))

        assert issue.status == IssueStatus.OPEN
        assert issue.priority == IssuePriority.HIGH
        photos = list(photo_repo.rows.values())
        assert len(photos) == 1
        assert photos[0].phase == PhotoPhase.BEFORE
        assert photos[0].blob_key == f"projects/p1/issues/{issue.id}/photos/{photos[0].id}.jpg"
        assert photos[0].blob_key in storage.blobs

    def test_multiple_before_photos(self, policy, draft, jpeg_upload, photo_repo):
        _run(policy.create_issue(draft, [jpeg_upload, _png("second.png")]))
        assert len(photo_repo.rows) == 2
        assert all(p.phase == PhotoPhase.BEFORE for p in photo_repo.rows.values())

    def test_no_photos_rejected_before_persistence(self, policy, draft, issue_repo, storage):
        with pytest.raises(EvidencePolicyViolation) as exc:
            _run(policy.create_issue(draft, []))
        assert exc.value.missing_phase == PhotoPhase.BEFORE
        assert issue_repo.rows == {}
        assert storage.blobs == {}

    def test_invalid_fields_reported_before_missing_photos(self, policy, draft):
        draft.title = ""
        with pytest.raises(ValidationError):
            _run(policy.create_issue(draft, []))

    def test_bad_location_rejected(self, policy, draft, jpeg_upload):
        draft.location_type = "worldPosition"
        with pytest.raises(ValidationError):
            _run(policy.create_issue(draft, [jpeg_upload]))

    def test_world_position_issue(self, policy, draft, jpeg_upload):
        draft.location_type = "worldPosition"
        draft.db_id = None
        draft.world_position_x, draft.world_position_y, draft.world_position_z = "1.0", "2.5", "-3"
        issue = _run(policy.create_issue(draft, [jpeg_upload]))
        assert (issue.location.x, issue.location.y, issue.location.z) == (1.0, 2.5, -3.0)

    def test_non_image_upload_rejected(self, policy, draft, issue_repo):
        upload = PhotoUpload("notes.pdf", "application/pdf", b"%PDF")
        with pytest.raises(ValidationError):
            _run(policy.create_issue(draft, [upload]))
        assert issue_repo.rows == {}

    def test_empty_upload_rejected(self, policy, draft):
        with pytest.raises(ValidationError):
            _run(policy.create_issue(draft, [PhotoUpload("x.jpg", "image/jpeg", b"")]))

    def test_oversize_upload_rejected(self, policy, draft):
        policy.max_photo_bytes = 4
        with pytest.raises(ValidationError):
            _run(policy.create_issue(draft, [PhotoUpload("x.jpg", "image/jpeg", b"12345")]))

    def test_missing_extension_stored_as_bin(self, policy, draft, photo_repo):
        _run(policy.create_issue(draft, [PhotoUpload("camera-capture", "image/jpeg", b"data")]))
        (photo,) = photo_repo.rows.values()
        assert photo.blob_key.endswith(".bin")

    def test_upload_failure_rolls_back_everything(self, policy, draft, jpeg_upload, issue_repo, photo_repo, storage):
        storage.fail_uploads_after = 1
        with pytest.raises(RuntimeError):
            _run(policy.create_issue(draft, [jpeg_upload, _png("second.png")]))
        assert issue_repo.rows == {}
        assert photo_repo.rows == {}
        assert storage.blobs == {}

    def test_photo_save_failure_rolls_back_everything(self, policy, draft, jpeg_upload, issue_repo, photo_repo, storage):
        photo_repo.fail_after = 0
        with pytest.raises(RuntimeError):
            _run(policy.create_issue(draft, [jpeg_upload]))
        assert issue_repo.rows == {}
        assert storage.blobs == {}


class TestChangeStatus:
    def _create(self, policy, draft, jpeg_upload):
        return _run(policy.create_issue(draft, [jpeg_upload]))

    def test_start_work_with_before_photo(self, policy, draft, jpeg_upload, issue_repo):
        issue = self._create(policy, draft, jpeg_upload)
        updated = _run(policy.change_status(issue.id, "p1", "in-progress"))
        assert updated.status == IssueStatus.IN_PROGRESS
        assert issue_repo.rows[issue.id].status == IssueStatus.IN_PROGRESS

    def test_done_requires_after_photo(self, policy, draft, jpeg_upload, issue_repo):
        issue = self._create(policy, draft, jpeg_upload)
        _run(policy.change_status(issue.id, "p1", "IN_PROGRESS"))

        with pytest.raises(EvidencePolicyViolation) as exc:
            _run(policy.change_status(issue.id, "p1", "DONE"))
        assert exc.value.missing_phase == PhotoPhase.AFTER
        assert issue_repo.rows[issue.id].status == IssueStatus.IN_PROGRESS

        _run(policy.add_photo(issue.id, "p1", _png(), "AFTER"))
        done = _run(policy.change_status(issue.id, "p1", "DONE"))
        assert done.status == IssueStatus.DONE

    def test_evidence_checked_before_edge(self, policy, draft, jpeg_upload):
        """OPEN -> DONE without AFTER photo reports the missing evidence, not the edge."""
        issue = self._create(policy, draft, jpeg_upload)
        with pytest.raises(EvidencePolicyViolation):
            _run(policy.change_status(issue.id, "p1", "DONE"))

    def test_illegal_edge_with_evidence(self, policy, draft, jpeg_upload):
        issue = self._create(policy, draft, jpeg_upload)
        _run(policy.add_photo(issue.id, "p1", _png(), "AFTER"))
        with pytest.raises(InvalidStatusTransition):
            _run(policy.change_status(issue.id, "p1", "DONE"))

    def test_missing_before_photo_blocks_any_change(self, policy, draft, jpeg_upload, photo_repo):
        issue = self._create(policy, draft, jpeg_upload)
        photo_repo.rows.clear()
        with pytest.raises(EvidencePolicyViolation) as exc:
            _run(policy.change_status(issue.id, "p1", "IN_PROGRESS"))
        assert exc.value.missing_phase == PhotoPhase.BEFORE

    def test_invalid_status_value(self, policy, draft, jpeg_upload):
        issue = self._create(policy, draft, jpeg_upload)
        with pytest.raises(ValidationError):
            _run(policy.change_status(issue.id, "p1", "ARCHIVED"))

    def test_unknown_issue(self, policy):
        with pytest.raises(NotFoundError):
            _run(policy.change_status("missing", "p1", "IN_PROGRESS"))

    def test_issue_of_other_project_is_not_found(self, policy, draft, jpeg_upload):
        issue = self._create(policy, draft, jpeg_upload)
        with pytest.raises(NotFoundError):
            _run(policy.change_status(issue.id, "p2", "IN_PROGRESS"))


class TestPhotosAndPriority:
    def test_add_photo_invalid_phase(self, policy, draft, jpeg_upload):
        issue = _run(policy.create_issue(draft, [jpeg_upload]))
        with pytest.raises(ValidationError):
            _run(policy.add_photo(issue.id, "p1", _png(), "DURING"))

    def test_add_photo_save_failure_removes_blob(self, policy, draft, jpeg_upload, photo_repo, storage):
        issue = _run(policy.create_issue(draft, [jpeg_upload]))
        photo_repo.fail_after = 1
        with pytest.raises(RuntimeError):
            _run(policy.add_photo(issue.id, "p1", _png(), "AFTER"))
        assert len(storage.blobs) == 1

    def test_list_photos_newest_first(self, policy, draft, jpeg_upload):
        issue = _run(policy.create_issue(draft, [jpeg_upload]))
        after = _run(policy.add_photo(issue.id, "p1", _png(), "after"))
        photos = _run(policy.list_photos(issue.id))
        assert photos[0].id == after.id
        assert [p.phase for p in photos] == [PhotoPhase.AFTER, PhotoPhase.BEFORE]

    def test_change_priority(self, policy, draft, jpeg_upload, issue_repo):
        issue = _run(policy.create_issue(draft, [jpeg_upload]))
        updated = _run(policy.change_priority(issue.id, "p1", "LOW"))
        assert updated.priority == IssuePriority.LOW
        assert issue_repo.rows[issue.id].priority == IssuePriority.LOW

    def test_photo_url(self, policy, draft, jpeg_upload, photo_repo):
        _run(policy.create_issue(draft, [jpeg_upload]))
        (photo,) = photo_repo.rows.values()
        url = _run(policy.get_photo_url(photo.id, 15))
        assert url == f"memory://{photo.blob_key}?ttl=15"

    def test_photo_url_unknown_photo(self, policy):
        with pytest.raises(NotFoundError):
            _run(policy.get_photo_url("nope"))
