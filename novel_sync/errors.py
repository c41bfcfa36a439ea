"""Error taxonomy shared by the sync components."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for failures raised by the sync layer."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class AuthError(SyncError):
    """Raised when the credential is missing, expired, denied or rejected."""


class RemoteError(SyncError):
    """Raised when the remote storage service cannot complete a request."""

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message, reason=reason)
        self.status = status


class RemoteReadError(RemoteError):
    """Raised when listing, downloading or deleting remote files fails."""


class RemoteWriteError(RemoteError):
    """Raised when creating or updating a remote file fails."""


class RateLimitExceeded(SyncError):
    """Raised when the daily request quota has been used up."""


class DecodeError(SyncError):
    """Raised when remote content is not a usable JSON document."""


__all__ = [
    "AuthError",
    "DecodeError",
    "RateLimitExceeded",
    "RemoteError",
    "RemoteReadError",
    "RemoteWriteError",
    "SyncError",
]
