"""
Local-disk photo storage with time-limited signed URLs.

Blobs live under ``UPLOAD_DIR`` at their blob key; the content type is kept
in a ``.meta.json`` sidecar.  A signed URL embeds a short JWT (python-jose)
carrying the key and expiry, resolved back to the file by the photo content
endpoint.
"""
import json
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from jose import JWTError, jwt

from app.config import (
    PHOTO_URL_ALGORITHM,
    PHOTO_URL_BASE,
    PHOTO_URL_DEFAULT_MINUTES,
    PHOTO_URL_MAX_MINUTES,
    PHOTO_URL_SECRET,
    UPLOAD_DIR,
)
from app.services.domain_errors import NotFoundError, ValidationError

logger = logging.getLogger("defects-storage")

_META_SUFFIX = ".meta.json"


class PhotoStorageError(Exception):
    """Raised when a blob cannot be written, read or addressed."""


class LocalPhotoStorage:
    def __init__(
        self,
        root: str = UPLOAD_DIR,
        secret: str = PHOTO_URL_SECRET,
        algorithm: str = PHOTO_URL_ALGORITHM,
        url_base: str = PHOTO_URL_BASE,
    ):
        self.root = os.path.abspath(root)
        self.secret = secret
        self.algorithm = algorithm
        self.url_base = url_base.rstrip("/")

    # ── Blob I/O ────────────────────────────────────────────────────────────

    async def upload(self, key: str, data: bytes, content_type: str) -> str:
        path = self._path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            with open(path, "wb") as fh:
                fh.write(data)
            with open(path + _META_SUFFIX, "w") as fh:
                json.dump({"content_type": content_type, "size": len(data)}, fh)
        except OSError as e:
            raise PhotoStorageError(f"Failed to store blob {key}: {e}") from e
        logger.debug(f"Stored blob {key} ({len(data)} bytes)")
        return key

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        for p in (path, path + _META_SUFFIX):
            if os.path.exists(p):
                os.remove(p)

    async def read(self, key: str) -> Tuple[bytes, str]:
        """Return (data, content_type) for a stored blob."""
        path = self._path_for(key)
        if not os.path.isfile(path):
            raise NotFoundError("Blob", key)
        with open(path, "rb") as fh:
            data = fh.read()
        content_type = "application/octet-stream"
        if os.path.isfile(path + _META_SUFFIX):
            with open(path + _META_SUFFIX) as fh:
                content_type = json.load(fh).get("content_type") or content_type
        return data, content_type

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path_for(key))

    # ── Signed URLs ─────────────────────────────────────────────────────────

    async def get_signed_url(self, key: str, expiration_minutes: Optional[int] = None) -> str:
        minutes = clamp_expiration(expiration_minutes)
        expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        token = jwt.encode({"key": key, "exp": expire}, self.secret, algorithm=self.algorithm)
        return f"{self.url_base}/{token}"

    def resolve_token(self, token: str) -> str:
        """Blob key of a valid, unexpired signed token."""
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            raise NotFoundError("Photo URL", "expired or invalid")
        key = payload.get("key")
        if not key:
            raise NotFoundError("Photo URL", "expired or invalid")
        return key

    # ── Internals ───────────────────────────────────────────────────────────

    def _path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([self.root, path]) != self.root or path == self.root:
            raise PhotoStorageError(f"Blob key escapes storage root: {key}")
        return path


def clamp_expiration(expiration_minutes: Optional[int]) -> int:
    """Signed URL lifetime in minutes: default when unset, capped at seven days."""
    if expiration_minutes is None:
        return PHOTO_URL_DEFAULT_MINUTES
    if expiration_minutes < 1:
        raise ValidationError("expirationMinutes must be a positive integer")
    return min(int(expiration_minutes), PHOTO_URL_MAX_MINUTES)
