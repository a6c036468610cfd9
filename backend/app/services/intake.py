import logging
import time
import uuid

import httpx

from app.core.config import settings
from app.services.exceptions import (
    DocumentValidationError,
    StorageUploadError,
    UploadVerificationError,
)
from app.services.storage import StorageBackend

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class DocumentIntakeService:
    """Validates an upload, stores it and checks that it can be fetched back."""

    def __init__(
        self,
        *,
        storage: StorageBackend,
        http_client: httpx.Client,
        max_size_bytes: int | None = None,
    ) -> None:
        self.storage = storage
        self.max_size_bytes = max_size_bytes or settings.MAX_UPLOAD_SIZE_BYTES
        self._http = http_client

    def validate(self, content_type: str | None, size: int | None) -> None:
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise DocumentValidationError("File type not allowed. Use JPG, PNG or WebP")
        if size is not None and size > self.max_size_bytes:
            limit_mb = self.max_size_bytes // (1024 * 1024)
            raise DocumentValidationError(f"File must not exceed {limit_mb}MB")
        if size == 0:
            raise DocumentValidationError("Uploaded file is empty")

    @staticmethod
    def build_storage_path(user_id: uuid.UUID, content_type: str) -> str:
        extension = ALLOWED_CONTENT_TYPES[content_type]
        return f"{user_id}/{int(time.time() * 1000)}-{uuid.uuid4().hex}.{extension}"

    def store(self, user_id: uuid.UUID, content: bytes, content_type: str) -> str:
        """Upload ``content`` under the user's namespace and return its storage path."""
        self.validate(content_type, len(content))
        path = self.build_storage_path(user_id, content_type)

        try:
            self.storage.upload(path, content, content_type=content_type)
        except StorageUploadError:
            logger.exception("Upload of %s failed", path)
            raise

        self.verify(path)
        logger.info("Stored document %s (%s, %s bytes)", path, content_type, len(content))
        return path

    def verify(self, path: str) -> None:
        public_url = self.storage.get_public_url(path)
        try:
            response = self._http.head(public_url)
        except httpx.HTTPError as exc:
            logger.warning("Could not verify uploaded file %s: %s", path, exc)
            raise UploadVerificationError(
                "Could not verify the uploaded file"
            ) from exc

        if response.is_error:
            logger.warning(
                "Uploaded file %s is not accessible (status %s)",
                path,
                response.status_code,
            )
            raise UploadVerificationError("The uploaded file is not accessible")

        returned_type = response.headers.get("content-type", "")
        if not returned_type.startswith("image/"):
            logger.warning(
                "Uploaded file %s reported content type %r", path, returned_type
            )
            raise UploadVerificationError("The uploaded file is not a valid image")
