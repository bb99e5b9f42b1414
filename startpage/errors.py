"""
Domain errors raised by the bookmark tree service.

Every error carries a stable ``code`` for clients and the HTTP status the
API responds with.
"""

from __future__ import annotations


class BookmarkError(Exception):
    """Base class for errors reported back to the caller."""

    code = "BOOKMARK_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(BookmarkError):
    code = "VALIDATION_ERROR"


class InvalidParentError(BookmarkError):
    code = "INVALID_PARENT"

    def __init__(self, message: str = "Invalid parent folder"):
        super().__init__(message)


class CircularReferenceError(BookmarkError):
    code = "CIRCULAR_REFERENCE"

    def __init__(
        self, message: str = "Cannot move folder - would create circular reference"
    ):
        super().__init__(message)


class DuplicateTitleError(BookmarkError):
    code = "DUPLICATE_TITLE"
    status_code = 409

    def __init__(self, message: str = "Duplicate title in the same folder"):
        super().__init__(message)


class NotFoundError(BookmarkError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Item not found"):
        super().__init__(message)


class ConflictError(BookmarkError):
    """The node changed between validation and write."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409

    def __init__(self, message: str = "Item was modified concurrently, retry"):
        super().__init__(message)


class StoreUnavailableError(BookmarkError):
    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "Bookmark store unavailable"):
        super().__init__(message)


class UnauthorizedError(BookmarkError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Missing authorization"):
        super().__init__(message)


class RequestInvalidError(BookmarkError):
    """Request parameters or body failed schema validation."""

    code = "REQUEST_INVALID"
    status_code = 422

    def __init__(self, message: str = "Invalid request", details=None):
        super().__init__(message)
        self.details = details or []

    def as_dict(self) -> dict:
        return {**super().as_dict(), "details": self.details}
