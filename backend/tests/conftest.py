"""
conftest.py — Shared pytest fixtures for the Site Defect Tracker backend test suite.

No database or network fixtures are defined here.  Repositories and photo
storage are replaced by in-memory doubles with the same async surface, the
viewer engine by ``PropertySnapshotEngine``, and timers by ``ManualScheduler``
so gesture timing is driven explicitly by the test.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import itertools
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ---------------------------------------------------------------------------
# In-memory repositories / storage
# ---------------------------------------------------------------------------

class MemoryIssueRepository:
    def __init__(self):
        self.rows = {}

    async def save(self, issue):
        self.rows[issue.id] = issue

    async def find_by_id(self, issue_id):
        return self.rows.get(issue_id)

    async def find_by_project(self, project_id, floor_id=None):
        found = [
            i for i in self.rows.values()
            if i.project_id == project_id and (floor_id is None or i.floor_id == floor_id)
        ]
        return sorted(found, key=lambda i: i.created_at, reverse=True)

    async def delete(self, issue_id):
        self.rows.pop(issue_id, None)


class MemoryPhotoRepository:
    def __init__(self):
        self.rows = {}
        self.fail_after = None  # raise on the save after this many successful saves
        self._saves = 0

    async def save(self, photo):
        if self.fail_after is not None and self._saves >= self.fail_after:
            raise RuntimeError("photo store unavailable")
        self._saves += 1
        self.rows[photo.id] = photo

    async def find_by_id(self, photo_id):
        return self.rows.get(photo_id)

    async def find_by_issue(self, issue_id):
        return [p for p in self.rows.values() if p.issue_id == issue_id]

    async def count_by_phase(self, issue_id, phase):
        return sum(1 for p in self.rows.values() if p.issue_id == issue_id and p.phase == phase)

    async def delete(self, photo_id):
        self.rows.pop(photo_id, None)


class MemoryStorage:
    def __init__(self):
        self.blobs = {}
        self.fail_uploads_after = None
        self._uploads = 0

    async def upload(self, key, data, content_type):
        if self.fail_uploads_after is not None and self._uploads >= self.fail_uploads_after:
            raise RuntimeError("blob store unavailable")
        self._uploads += 1
        self.blobs[key] = (data, content_type)
        return key

    async def delete(self, key):
        self.blobs.pop(key, None)

    async def get_signed_url(self, key, expiration_minutes=60):
        return f"memory://{key}?ttl={expiration_minutes}"


# ---------------------------------------------------------------------------
# Manual timer scheduler
# ---------------------------------------------------------------------------

class _ManualTimer:
    def __init__(self, due, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Deterministic clock: timers fire only when ``advance`` passes their due time."""

    def __init__(self):
        self.time = 0.0
        self.timers = []

    def call_later(self, delay_s, callback):
        timer = _ManualTimer(self.time + delay_s, callback)
        self.timers.append(timer)
        return timer

    def now(self):
        return self.time

    def advance(self, ms):
        target = self.time + ms / 1000
        while True:
            # Tolerance absorbs float drift from summing millisecond steps
            due = [t for t in self.timers if not t.cancelled and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.time = timer.due
            timer.callback()
        self.time = target

    @property
    def active(self):
        return [t for t in self.timers if not t.cancelled]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def issue_repo():
    return MemoryIssueRepository()


@pytest.fixture
def photo_repo():
    return MemoryPhotoRepository()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def policy(issue_repo, photo_repo, storage):
    """IssueWorkflowPolicy over in-memory collaborators with sequential ids."""
    from app.services.workflow_policy import IssueWorkflowPolicy
    counter = itertools.count(1)
    return IssueWorkflowPolicy(
        issue_repo, photo_repo, storage,
        id_factory=lambda: f"id-{next(counter)}",
    )


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def draft():
    """A valid element-anchored creation request for project p1 / floor f1."""
    from app.services.workflow_policy import IssueDraft
    return IssueDraft(
        project_id="p1",
        floor_id="f1",
        title="Cracked tile",
        description="Hairline crack near the lift lobby",
        location_type="dbId",
        db_id="1234",
        issue_type="Finishing",
        priority="HIGH",
        reported_by="inspector@site",
    )


@pytest.fixture
def jpeg_upload():
    from app.services.workflow_policy import PhotoUpload
    return PhotoUpload("crack.JPG", "image/jpeg", b"\xff\xd8\xff\xe0fake-jpeg")


@pytest.fixture
def scene_engine():
    """
    Headless engine with a camera at (0, 10, 20) looking at the origin over an
    800 × 600 canvas.  Element 1 is a 2 m cube at the origin, element 2 a cube
    off to the right at x = 8.
    """
    from app.services.viewer.engine import BoundingBox, CameraState, Vec3
    from app.services.viewer.snapshot_engine import PropertySnapshotEngine, SnapshotTree

    return PropertySnapshotEngine(
        tree=SnapshotTree.flat([1, 2]),
        bounds={
            1: BoundingBox(Vec3(-1.0, -1.0, -1.0), Vec3(1.0, 1.0, 1.0)),
            2: BoundingBox(Vec3(7.0, -1.0, -1.0), Vec3(9.0, 1.0, 1.0)),
        },
        camera=CameraState(position=Vec3(0.0, 10.0, 20.0), target=Vec3(0.0, 0.0, 0.0)),
        canvas=(800.0, 600.0),
    )
