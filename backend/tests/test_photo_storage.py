"""
test_photo_storage.py — LocalPhotoStorage, signed URLs and blob key rules.

Uses pytest's tmp_path as the storage root; no network required.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from app.services.domain_errors import NotFoundError, ValidationError
from app.services.photo_evidence import Photo, PhotoPhase, build_blob_key, file_extension, parse_phase
from app.services.photo_storage import LocalPhotoStorage, PhotoStorageError, clamp_expiration

SECRET = "test-secret"


@pytest.fixture
def local_storage(tmp_path):
    return LocalPhotoStorage(root=str(tmp_path), secret=SECRET, url_base="/api/photos/content/")


class TestBlobKeys:
    @pytest.mark.parametrize(
        "name, ext",
        [("site.JPG", "jpg"), ("scan.final.PNG", "png"), ("noext", "bin"), ("", "bin"), (None, "bin")],
    )
    def test_file_extension(self, name, ext):
        assert file_extension(name) == ext

    def test_key_layout(self):
        assert build_blob_key("p", "i", "ph", "a.HEIC") == "projects/p/issues/i/photos/ph.heic"

    def test_phase_parsing(self):
        assert parse_phase(" after ") == PhotoPhase.AFTER
        with pytest.raises(ValidationError):
            parse_phase("MIDDLE")

    def test_photo_requires_blob_key(self):
        with pytest.raises(ValidationError):
            Photo.create("ph", "i", " ", PhotoPhase.BEFORE)


class TestLocalPhotoStorage:
    def test_upload_read_delete(self, local_storage):
        key = "projects/p/issues/i/photos/a.jpg"
        asyncio.run(local_storage.upload(key, b"jpeg-bytes", "image/jpeg"))
        assert local_storage.exists(key)

        data, content_type = asyncio.run(local_storage.read(key))
        assert data == b"jpeg-bytes"
        assert content_type == "image/jpeg"

        asyncio.run(local_storage.delete(key))
        assert not local_storage.exists(key)

    def test_read_missing(self, local_storage):
        with pytest.raises(NotFoundError):
            asyncio.run(local_storage.read("projects/p/missing.jpg"))

    def test_delete_missing_is_noop(self, local_storage):
        asyncio.run(local_storage.delete("projects/p/missing.jpg"))

    def test_key_cannot_escape_root(self, local_storage):
        with pytest.raises(PhotoStorageError):
            asyncio.run(local_storage.upload("../outside.jpg", b"x", "image/jpeg"))

    def test_signed_url_round_trip(self, local_storage):
        key = "projects/p/issues/i/photos/a.jpg"
        url = asyncio.run(local_storage.get_signed_url(key, 5))
        assert url.startswith("/api/photos/content/")
        token = url.rsplit("/", 1)[-1]
        assert local_storage.resolve_token(token) == key

    def test_expired_token_rejected(self, local_storage):
        token = jwt.encode(
            {"key": "k", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            SECRET, algorithm="HS256",
        )
        with pytest.raises(NotFoundError):
            local_storage.resolve_token(token)

    def test_foreign_signature_rejected(self, local_storage):
        token = jwt.encode(
            {"key": "k", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
            "other-secret", algorithm="HS256",
        )
        with pytest.raises(NotFoundError):
            local_storage.resolve_token(token)


class TestClampExpiration:
    def test_default(self):
        assert clamp_expiration(None) == 60

    def test_capped_at_seven_days(self):
        assert clamp_expiration(100_000) == 7 * 24 * 60

    def test_passthrough(self):
        assert clamp_expiration(15) == 15

    @pytest.mark.parametrize("minutes", [0, -5])
    def test_non_positive_rejected(self, minutes):
        with pytest.raises(ValidationError):
            clamp_expiration(minutes)
