from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from .models import SyncEntity


class ConflictOutcome(str, Enum):
    """Which side won a comparison and why."""

    IN_SYNC = "in_sync"
    LOCAL_NEWER = "local_newer"
    REMOTE_NEWER = "remote_newer"
    LOCAL_LATER_EDIT = "local_later_edit"
    REMOTE_LATER_EDIT = "remote_later_edit"
    LOCAL_DEFAULT = "local_default"


@dataclass(slots=True, frozen=True)
class Resolution:
    winner: SyncEntity
    outcome: ConflictOutcome

    @property
    def remote_won(self) -> bool:
        return self.outcome in (ConflictOutcome.REMOTE_NEWER, ConflictOutcome.REMOTE_LATER_EDIT)


def decide(local: SyncEntity, remote: SyncEntity, *, conflict_candidate: bool = False) -> ConflictOutcome:
    """Pick the winning side without touching either entity.

    The higher ``version`` always wins. Equal versions mean the copies are in
    sync unless the caller flags them as a true conflict, in which case the
    later ``updated_at`` wins and an exact tie favours the local copy.
    """

    if local.version > remote.version:
        return ConflictOutcome.LOCAL_NEWER
    if remote.version > local.version:
        return ConflictOutcome.REMOTE_NEWER
    if not conflict_candidate:
        return ConflictOutcome.IN_SYNC
    if remote.updated_at > local.updated_at:
        return ConflictOutcome.REMOTE_LATER_EDIT
    if local.updated_at > remote.updated_at:
        return ConflictOutcome.LOCAL_LATER_EDIT
    return ConflictOutcome.LOCAL_DEFAULT


def resolve_with_outcome(
    local: SyncEntity,
    remote: SyncEntity,
    *,
    conflict_candidate: bool = False,
    now: datetime | None = None,
) -> Resolution:
    outcome = decide(local, remote, conflict_candidate=conflict_candidate)
    source = remote if outcome in (ConflictOutcome.REMOTE_NEWER, ConflictOutcome.REMOTE_LATER_EDIT) else local
    return Resolution(winner=source.mark_synced(now or datetime.now(tz=UTC)), outcome=outcome)


def resolve(
    local: SyncEntity,
    remote: SyncEntity,
    *,
    conflict_candidate: bool = False,
    now: datetime | None = None,
) -> SyncEntity:
    """Return the entity that should be kept, stamped as synced at ``now``.

    Pure and deterministic for fixed inputs and ``now``.
    """

    return resolve_with_outcome(local, remote, conflict_candidate=conflict_candidate, now=now).winner


__all__ = ["ConflictOutcome", "Resolution", "decide", "resolve", "resolve_with_outcome"]
