"""Media pipeline error taxonomy.

Every error carries the HTTP status and stable error code used by
``error_handlers`` when it escapes to an API client.
"""

from __future__ import annotations


class MediaError(Exception):
    status_code: int = 500
    error: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(MediaError):
    """Malformed upload; raised before any side effect."""

    status_code = 400
    error = "bad_request"


class ContentTooLargeError(ValidationError):
    status_code = 413
    error = "payload_too_large"


class NotFoundError(MediaError):
    status_code = 404
    error = "not_found"


class QuotaExceededError(MediaError):
    """Too many in-progress (deferred) uploads for one user."""

    status_code = 429
    error = "rate_limited"

    def __init__(self, limit: int) -> None:
        super().__init__(
            f"You cannot process more than {limit} media files at the same time. "
            "Please try again later."
        )
        self.limit = limit


class TransientToolError(MediaError):
    """External codec/metadata tool failed or timed out."""

    status_code = 502
    error = "upstream_error"


class StorageError(MediaError):
    status_code = 502
    error = "storage_error"


class InvariantViolation(MediaError):
    status_code = 409
    error = "conflict"
