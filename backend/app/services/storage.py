"""Blob storage for uploaded documents.

Objects are addressed by a bucket-relative path such as
``<user id>/<file name>``. The local backend keeps them on disk and
serves them through the ``/storage`` routes.
"""

from __future__ import annotations

import mimetypes
from datetime import timedelta
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

from app.core.config import settings
from app.core.security import create_download_token
from app.services.exceptions import StorageUploadError


IMAGE_CONTENT_TYPES = {
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


def guess_content_type(name: str) -> str | None:
    suffix = Path(name).suffix.lower()
    if suffix in IMAGE_CONTENT_TYPES:
        return IMAGE_CONTENT_TYPES[suffix]
    content_type, _ = mimetypes.guess_type(name)
    return content_type


class StorageBackend(Protocol):
    bucket: str

    def upload(self, path: str, content: bytes, *, content_type: str) -> str: ...

    def get_public_url(self, path: str) -> str: ...

    def create_signed_url(self, path: str, expires_in: int) -> str: ...


class LocalFileStorage:
    def __init__(
        self,
        root: str | Path,
        *,
        bucket: str,
        public_base_url: str,
    ) -> None:
        self.root = Path(root)
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.bucket_root.mkdir(parents=True, exist_ok=True)

    @property
    def bucket_root(self) -> Path:
        return self.root / self.bucket

    def resolve(self, path: str) -> Path:
        """Map an object path to its file, refusing anything outside the bucket."""
        bucket_root = self.bucket_root.resolve()
        target = (bucket_root / path).resolve()
        if target == bucket_root or bucket_root not in target.parents:
            raise ValueError(f"Invalid object path: {path!r}")
        return target

    def upload(self, path: str, content: bytes, *, content_type: str) -> str:
        try:
            target = self.resolve(path)
        except ValueError as exc:
            raise StorageUploadError("Invalid storage path") from exc
        if target.exists():
            raise StorageUploadError("The resource already exists")
        expected_type = guess_content_type(target.name)
        if expected_type and expected_type != content_type:
            raise StorageUploadError("File extension does not match its content type")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as exc:
            raise StorageUploadError("Error uploading document") from exc
        return path

    def read(self, path: str) -> tuple[bytes, str]:
        target = self.resolve(path)
        content_type = guess_content_type(target.name)
        return target.read_bytes(), content_type or "application/octet-stream"

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/public/{self.bucket}/{quote(path)}"

    def create_signed_url(self, path: str, expires_in: int) -> str:
        token = create_download_token(
            f"{self.bucket}/{path}", timedelta(seconds=expires_in)
        )
        return f"{self.public_base_url}/signed/{self.bucket}/{quote(path)}?token={token}"


def build_storage() -> LocalFileStorage:
    return LocalFileStorage(
        settings.STORAGE_ROOT,
        bucket=settings.STORAGE_BUCKET,
        public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
    )
