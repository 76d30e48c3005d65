"""Error taxonomy shared by the directory, auth and API layers.

Every error carries:

- `status_code`: the HTTP status the API boundary maps it to
- `detail`: a stable snake_case code clients can branch on
- a human readable message (`str(err)`)

The API installs a single handler for `DirectoryError`, so services raise
these and never build HTTP responses themselves.
"""

from __future__ import annotations


class DirectoryError(Exception):
    status_code: int = 500
    default_detail: str = "internal_error"

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.detail = detail or self.default_detail

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(DirectoryError):
    """Missing or malformed input; the caller can fix it."""

    status_code = 400
    default_detail = "validation_error"


class ConflictError(DirectoryError):
    """A username or email is already taken."""

    status_code = 409
    default_detail = "user_exists"


class AuthError(DirectoryError):
    """Bad credentials or a bad/expired token."""

    status_code = 401
    default_detail = "authentication_failed"


class AuthorizationError(DirectoryError):
    status_code = 403
    default_detail = "forbidden"


class NotFoundError(DirectoryError):
    status_code = 404
    default_detail = "user_not_found"


class StorageError(DirectoryError):
    """Backend unreachable or returned malformed data.

    Not retried here; callers/infrastructure decide on retries.
    """

    status_code = 500
    default_detail = "storage_error"
