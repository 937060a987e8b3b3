"""
auth/uploads.py -- Storage for user-supplied files (avatars).

UploadStore is the protocol AuthService depends on:
  upload_file(data, filename, content_type, folder) -> UploadResult(url)
  delete_file(url) -> UploadResult

MemoryUploadStore keeps bytes in a dict (tests). LocalUploadStore writes under
a directory and returns URLs below a public base path; files get random names,
so the client-supplied filename only contributes its extension.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger("authcore.uploads")

ALLOWED_IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


@dataclass
class AvatarFile:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UploadResult:
    success: bool
    url: str | None = None
    file_name: str | None = None
    error: str | None = None


class UploadStore(Protocol):
    def upload_file(self, data: bytes, filename: str, content_type: str, folder: str) -> UploadResult: ...

    def delete_file(self, url: str) -> UploadResult: ...


def _stored_name(filename: str, content_type: str) -> str:
    suffix = ALLOWED_IMAGE_TYPES.get(content_type) or PurePosixPath(filename or "").suffix.lower()
    return f"{uuid.uuid4().hex}{suffix}"


class MemoryUploadStore:
    def __init__(self, base_url: str = "/uploads") -> None:
        self.base_url = base_url.rstrip("/")
        self.files: dict[str, bytes] = {}

    def upload_file(self, data: bytes, filename: str, content_type: str, folder: str) -> UploadResult:
        name = _stored_name(filename, content_type)
        url = f"{self.base_url}/{folder}/{name}"
        self.files[url] = data
        return UploadResult(success=True, url=url, file_name=name)

    def delete_file(self, url: str) -> UploadResult:
        if self.files.pop(url, None) is None:
            return UploadResult(success=False, error="File not found")
        return UploadResult(success=True)


class LocalUploadStore:
    """Files under root_dir/<folder>/, served from base_url/<folder>/."""

    def __init__(self, root_dir: str | Path, base_url: str = "/uploads") -> None:
        self.root = Path(root_dir).resolve()
        self.base_url = base_url.rstrip("/")

    def _path_for(self, url: str) -> Path | None:
        prefix = self.base_url + "/"
        if not url.startswith(prefix):
            return None
        path = (self.root / url[len(prefix):]).resolve()
        # Reject URLs that climb out of the upload directory.
        if self.root not in path.parents:
            return None
        return path

    def upload_file(self, data: bytes, filename: str, content_type: str, folder: str) -> UploadResult:
        name = _stored_name(filename, content_type)
        target_dir = self.root / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        (target_dir / name).write_bytes(data)
        logger.info("Stored upload %s/%s (%d bytes)", folder, name, len(data))
        return UploadResult(success=True, url=f"{self.base_url}/{folder}/{name}", file_name=name)

    def delete_file(self, url: str) -> UploadResult:
        path = self._path_for(url)
        if path is None or not path.is_file():
            return UploadResult(success=False, error="File not found")
        path.unlink()
        return UploadResult(success=True)
