"""Data types shared by the sync components."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .const import PROTECTED_ENTITY_KEYS

_DOMAIN_DEFAULTS: dict[str, Any] = {
    "title": "",
    "body": "",
    "tags": [],
    "folderId": "",
}


def parse_timestamp(raw: Any) -> datetime | None:
    """Return an aware UTC datetime for ISO strings, epoch numbers or datetimes."""

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, int | float):
        # Browser-side payloads store epoch milliseconds.
        seconds = raw / 1000 if raw > 1e11 else raw
        try:
            parsed = datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(raw).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    try:
        return parsed.astimezone(UTC)
    except OverflowError:
        return None


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class SyncEntity:
    """A versioned document subject to sync.

    ``fields`` carries the domain payload (title, body, tags, folder and
    anything else the editor stores) using the editor's own key names.
    """

    id: str
    version: int
    updated_at: datetime
    last_sync_at: datetime | None = None
    is_syncing: bool = False
    fields: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, now: datetime | None = None) -> SyncEntity:
        """Create an entity from a stored or remote payload, filling defaults."""

        entity_id = str(payload.get("id") or "").strip()
        if not entity_id:
            raise ValueError("entity payload missing id")
        now = now or datetime.now(tz=UTC)
        try:
            version = int(payload.get("version") or 1)
        except (TypeError, ValueError, OverflowError):
            version = 1
        fields: dict[str, Any] = {key: _copy_default(value) for key, value in _DOMAIN_DEFAULTS.items()}
        for key, value in payload.items():
            if key in PROTECTED_ENTITY_KEYS:
                continue
            fields[key] = value
        if not fields.get("createdAt"):
            fields["createdAt"] = format_timestamp(now)
        return cls(
            id=entity_id,
            version=max(version, 1),
            updated_at=parse_timestamp(payload.get("updatedAt")) or now,
            last_sync_at=parse_timestamp(payload.get("lastSyncAt")),
            is_syncing=bool(payload.get("isSyncing", False)),
            fields=fields,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id}
        payload.update(self.fields)
        payload["version"] = self.version
        payload["updatedAt"] = format_timestamp(self.updated_at)
        payload["lastSyncAt"] = format_timestamp(self.last_sync_at)
        payload["isSyncing"] = self.is_syncing
        return payload

    def apply_update(self, partial: Mapping[str, Any], *, now: datetime) -> SyncEntity:
        """Return the committed successor of this entity: merged fields, version + 1."""

        fields = dict(self.fields)
        fields.update({key: value for key, value in partial.items() if key not in PROTECTED_ENTITY_KEYS})
        return replace(self, fields=fields, version=self.version + 1, updated_at=now)

    def mark_synced(self, now: datetime) -> SyncEntity:
        return replace(self, last_sync_at=now, is_syncing=False)

    def same_content(self, other: SyncEntity) -> bool:
        return dict(self.fields) == dict(other.fields)


def _copy_default(value: Any) -> Any:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


@dataclass(slots=True, frozen=True)
class RemoteFileRef:
    """Lookup result pointing at a file held by the remote service."""

    file_id: str
    file_name: str
    modified_time: datetime | None = None
    size: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> RemoteFileRef:
        file_id = str(payload.get("id") or "").strip()
        if not file_id:
            raise ValueError("remote file payload missing id")
        size_raw = payload.get("size")
        try:
            size = int(size_raw) if size_raw is not None else None
        except (TypeError, ValueError):
            size = None
        return cls(
            file_id=file_id,
            file_name=str(payload.get("name") or ""),
            modified_time=parse_timestamp(payload.get("modifiedTime")),
            size=size,
        )


class SyncState(str, Enum):
    """Orchestrator authentication state."""

    SIGNED_OUT = "signed_out"
    AUTHENTICATING = "authenticating"
    SIGNED_IN = "signed_in"


@dataclass(slots=True)
class SyncStatus:
    """Process-wide sync status published to the UI layer."""

    is_syncing: bool = False
    last_sync_time: datetime | None = None
    error: str | None = None
    is_signed_in: bool = False

    def copy(self) -> SyncStatus:
        return replace(self)

    def as_dict(self) -> dict[str, Any]:
        return {
            "isSyncing": self.is_syncing,
            "lastSyncTime": format_timestamp(self.last_sync_time),
            "error": self.error,
            "isSignedIn": self.is_signed_in,
        }


@dataclass(slots=True, frozen=True)
class RateWindow:
    """Snapshot of the outbound request quota."""

    request_count: int
    window_start: datetime
    daily_limit: int
    window_length: timedelta = timedelta(days=1)

    @property
    def current(self) -> int:
        return self.request_count

    @property
    def remaining(self) -> int:
        return max(self.daily_limit - self.request_count, 0)

    @property
    def exhausted(self) -> bool:
        return self.request_count >= self.daily_limit

    def time_until_reset(self, now: datetime) -> timedelta:
        return max(self.window_start + self.window_length - now, timedelta(0))

    def as_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "current": self.request_count,
            "dailyLimit": self.daily_limit,
            "windowStart": format_timestamp(self.window_start),
            "timeUntilReset": self.time_until_reset(now).total_seconds(),
        }


__all__ = [
    "RateWindow",
    "RemoteFileRef",
    "SyncEntity",
    "SyncState",
    "SyncStatus",
    "format_timestamp",
    "parse_timestamp",
]
