"""Debounced autosave of editor changes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .const import DEFAULT_DEBOUNCE_SECONDS
from .models import SyncEntity
from .storage import LocalStore

_LOGGER = logging.getLogger(__name__)

PushCallback = Callable[[SyncEntity], Awaitable[Any]]
PushErrorCallback = Callable[[SyncEntity, Exception], None]


@dataclass(slots=True)
class PendingSave:
    """Merged partial update waiting for its debounce timer."""

    payload: dict[str, Any] = field(default_factory=dict)
    task: asyncio.Task | None = None


class AutosaveScheduler:
    """Coalesce rapid edits into one local write and one remote push per entity.

    Each entity owns at most one pending timer. A new edit merges into the
    pending payload (last write wins per field) and restarts the timer. When the
    timer fires, or on :meth:`flush`, the merged payload is committed to the
    local store with ``version + 1`` and only then handed to ``push`` as a
    background task whose failure never touches the local write.
    """

    def __init__(
        self,
        store: LocalStore,
        push: PushCallback | None = None,
        *,
        delay: float = DEFAULT_DEBOUNCE_SECONDS,
        on_push_error: PushErrorCallback | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.delay = delay
        self._push = push
        self._on_push_error = on_push_error
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.logger = logger or _LOGGER
        self._pending: dict[str, PendingSave] = {}
        self._push_tasks: set[asyncio.Task] = set()

    @property
    def pending_ids(self) -> list[str]:
        return sorted(self._pending)

    @property
    def push_in_flight(self) -> int:
        return len(self._push_tasks)

    def schedule_save(self, entity_id: str, partial: Mapping[str, Any]) -> None:
        """Merge ``partial`` into the pending payload and restart the debounce timer."""

        pending = self._pending.get(entity_id)
        if pending is None:
            pending = self._pending[entity_id] = PendingSave()
        pending.payload.update(partial)
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()
        pending.task = asyncio.get_running_loop().create_task(self._fire_after_delay(entity_id))

    def flush(self, entity_id: str) -> SyncEntity:
        """Cancel any pending timer and commit right away, even with nothing pending.

        Raises :class:`KeyError` when the entity does not exist locally.
        """

        pending = self._pending.pop(entity_id, None)
        payload: dict[str, Any] = {}
        if pending is not None:
            payload = pending.payload
            if pending.task is not None and not pending.task.done() and pending.task is not asyncio.current_task():
                pending.task.cancel()
        return self._commit(entity_id, payload)

    def flush_all(self) -> list[SyncEntity]:
        committed: list[SyncEntity] = []
        for entity_id in list(self._pending):
            try:
                committed.append(self.flush(entity_id))
            except KeyError:
                self.logger.warning("Dropping pending save for missing novel %s", entity_id)
        return committed

    def cancel(self, entity_id: str) -> bool:
        """Drop a pending save without writing it."""

        pending = self._pending.pop(entity_id, None)
        if pending is None:
            return False
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()
        return True

    def cancel_all(self) -> None:
        for entity_id in list(self._pending):
            self.cancel(entity_id)

    async def async_drain(self) -> None:
        """Wait for in-flight background pushes to finish."""

        while self._push_tasks:
            await asyncio.gather(*list(self._push_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    async def _fire_after_delay(self, entity_id: str) -> None:
        await asyncio.sleep(self.delay)
        pending = self._pending.get(entity_id)
        if pending is None or pending.task is not asyncio.current_task():
            return
        del self._pending[entity_id]
        try:
            self._commit(entity_id, pending.payload)
        except KeyError:
            self.logger.warning("Novel %s disappeared before its autosave fired", entity_id)
        except Exception:  # pragma: no cover - defensive log
            self.logger.exception("Autosave for novel %s failed", entity_id)

    def _commit(self, entity_id: str, payload: Mapping[str, Any]) -> SyncEntity:
        current = self.store.read_entity(entity_id)
        updated = current.apply_update(payload, now=self._clock())
        self.store.write_entity(updated)
        self.logger.debug("Saved novel %s at version %s", entity_id, updated.version)
        if self._push is not None:
            task = asyncio.get_running_loop().create_task(self._push_safely(updated))
            self._push_tasks.add(task)
            task.add_done_callback(self._push_tasks.discard)
        return updated

    async def _push_safely(self, entity: SyncEntity) -> None:
        try:
            await self._push(entity)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.logger.warning("Background push of novel %s failed: %s", entity.id, err)
            if self._on_push_error is not None:
                self._on_push_error(entity, err)


__all__ = ["AutosaveScheduler", "PendingSave"]
