"""Client-side exception types."""
from typing import Optional


class PlatformError(Exception):
    """A request to the hosted platform was rejected or could not be completed."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status})"


class UploadError(PlatformError):
    pass


class NotSignedIn(Exception):
    pass


class ReorderRejected(Exception):
    """A conversation move that cannot be applied to the current list."""
