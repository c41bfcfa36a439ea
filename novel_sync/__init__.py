"""Offline-first drive sync for the novel writing app."""

from .auth import ConsentProvider, Credential, CredentialStore, OAuthClient
from .autosave import AutosaveScheduler
from .config import SyncConfig
from .conflict import ConflictOutcome, resolve
from .diagnostics import async_get_diagnostics
from .drive import DriveFileResolver
from .errors import (
    AuthError,
    DecodeError,
    RateLimitExceeded,
    RemoteError,
    RemoteReadError,
    RemoteWriteError,
    SyncError,
)
from .manager import SyncManager
from .models import RateWindow, RemoteFileRef, SyncEntity, SyncState, SyncStatus
from .multipart import decode_multipart, encode_multipart
from .rate import RateTracker
from .storage import LocalStore

__all__ = [
    "AuthError",
    "AutosaveScheduler",
    "ConflictOutcome",
    "ConsentProvider",
    "Credential",
    "CredentialStore",
    "DecodeError",
    "DriveFileResolver",
    "LocalStore",
    "OAuthClient",
    "RateLimitExceeded",
    "RateTracker",
    "RateWindow",
    "RemoteError",
    "RemoteFileRef",
    "RemoteReadError",
    "RemoteWriteError",
    "SyncConfig",
    "SyncEntity",
    "SyncError",
    "SyncManager",
    "SyncState",
    "SyncStatus",
    "async_get_diagnostics",
    "decode_multipart",
    "encode_multipart",
    "resolve",
]
