"""Errors raised by the service layer.

Each carries a short message that is safe to show to the end user;
the underlying cause is chained and logged where it is raised.
"""


class ServiceError(Exception):
    """Base class for service-layer failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DocumentValidationError(ServiceError):
    """The uploaded file was rejected before any network call."""

    status_code = 400


class StorageUploadError(ServiceError):
    status_code = 502


class UploadVerificationError(ServiceError):
    """The stored object could not be fetched back as an image."""

    status_code = 502


class ExternalServiceError(ServiceError):
    """A vision or text-generation call failed or returned unusable content."""

    status_code = 502

    def __init__(self, service: str, message: str) -> None:
        super().__init__(message)
        self.service = service


class DocumentAnalysisError(ServiceError):
    status_code = 502


class RecordNotFoundError(ServiceError):
    status_code = 404
