"""Error types raised by the backend client and the data service."""

from typing import Optional

# Backend code for "single row requested, zero rows matched"
NO_ROWS_CODE = "PGRST116"


class LibreezeError(Exception):
    """Base class for every error this package raises."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(LibreezeError):
    """Bad credentials, registration conflict or any other auth rejection."""
    pass


class NotAuthenticated(LibreezeError):
    """A privileged call was attempted without a session token."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class NotFound(LibreezeError):
    """A single-entity lookup matched no rows."""
    pass


class BackendError(LibreezeError):
    """A data operation failed; carries the backend's message and code."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code

    @property
    def is_no_rows(self) -> bool:
        return self.code == NO_ROWS_CODE


class NetworkError(LibreezeError):
    """A remote function answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
