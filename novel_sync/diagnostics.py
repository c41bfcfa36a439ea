from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from .const import CONF_CLIENT_SECRET
from .manager import SyncManager
from .models import format_timestamp
from .utils.redact import redact

TO_REDACT = {CONF_CLIENT_SECRET}


async def async_get_diagnostics(manager: SyncManager, *, now: datetime | None = None) -> dict[str, Any]:
    """Return a redacted snapshot of the sync layer for support reports."""

    now = now or datetime.now(tz=UTC)
    credential = manager.credentials.load_token(keep_refreshable=manager.config.can_refresh)
    payload: dict[str, Any] = {
        "config": redact(manager.config.to_options(), TO_REDACT),
        "state": manager.state.value,
        "status": manager.get_sync_status().as_dict(),
        "rate_limit": manager.get_rate_limit_info().as_dict(now),
        "credential": {
            "present": credential is not None,
            "expires_at": format_timestamp(credential.expires_at) if credential else None,
            "refreshable": bool(credential and credential.refresh_token),
        },
        "autosave": {
            "pending": manager.autosave.pending_ids,
            "pushes_in_flight": manager.autosave.push_in_flight,
        },
        "last_pull": dict(manager.last_pull_summary) if manager.last_pull_summary else None,
        "novel_count": len(manager.store.read_all_entities()),
    }
    return payload
