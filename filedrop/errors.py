"""Typed failures surfaced to API callers.

Every error carries a stable machine-readable ``code`` and a human
``message``; the HTTP layer renders them as
``{"error": {"code": ..., "message": ...}}``.
"""


class ServiceError(Exception):
    code = "error"
    status_code = 500
    default_message = "request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadRequest(ServiceError):
    code = "bad_request"
    status_code = 400
    default_message = "bad request"


class Unauthenticated(ServiceError):
    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class InvalidCredentials(ServiceError):
    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"


class Forbidden(ServiceError):
    code = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class NotFound(ServiceError):
    code = "not_found"
    status_code = 404
    default_message = "not found"


class Conflict(ServiceError):
    code = "conflict"
    status_code = 409
    default_message = "already exists"


class InvalidFileType(ServiceError):
    code = "invalid_file_type"
    status_code = 400
    default_message = "Invalid file type"


class FileTooLarge(ServiceError):
    code = "file_too_large"
    status_code = 413
    default_message = "File too large"


class NoFileReceived(ServiceError):
    code = "no_file_received"
    status_code = 400
    default_message = "No file received"


class QuotaExceeded(ServiceError):
    code = "quota_exceeded"
    status_code = 403
    default_message = "Quota exceeded"


class UploadFailed(ServiceError):
    code = "upload_failed"
    status_code = 502
    default_message = "Upload failed"


class StorageUnavailable(ServiceError):
    code = "storage_unavailable"
    status_code = 503
    default_message = "Storage unavailable"
