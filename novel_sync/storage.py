from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from copy import deepcopy
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from .const import DEFAULT_SETTINGS, STORAGE_VERSION
from .models import SyncEntity, format_timestamp
from .utils.json_io import load_json, save_json

_LOGGER = logging.getLogger(__name__)

DEFAULT_DATA: dict[str, Any] = {
    "version": STORAGE_VERSION,
    "novels": {},
    "folders": [],
    "tags": [],
    "settings": dict(DEFAULT_SETTINGS),
    "deleted": [],
}


def _clone_default(value: Any) -> Any:
    """Return a new mutable default instance when required."""

    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, list):
        return list(value)
    return value


class LocalStore:
    """JSON-file backed store holding the authoritative local state.

    Novels are kept as :class:`SyncEntity` payloads keyed by id. Folders, tags
    and editor settings form the settings bundle. Deleted novel ids are kept as
    tombstones so that a pull never resurrects them.

    ``path=None`` keeps everything in memory.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self.data: dict[str, Any] = self._load()

    # ------------------------------------------------------------------
    def _load(self) -> dict[str, Any]:
        data: Any = None
        if self.path is not None and self.path.exists():
            try:
                data = load_json(self.path)
            except (OSError, ValueError) as err:
                _LOGGER.warning("Discarding unreadable local store %s: %s", self.path, err)
                data = None
        if not isinstance(data, dict):
            return deepcopy(DEFAULT_DATA)
        for key, default_value in DEFAULT_DATA.items():
            current = data.get(key)
            if key not in data:
                data[key] = _clone_default(default_value)
            elif isinstance(default_value, dict) and not isinstance(current, Mapping):
                data[key] = _clone_default(default_value)
            elif isinstance(default_value, list) and (
                not isinstance(current, Sequence) or isinstance(current, str | bytes | bytearray)
            ):
                data[key] = _clone_default(default_value)
        novels = data["novels"]
        if isinstance(novels, list):
            # Older exports keep novels as a list.
            data["novels"] = {str(item.get("id")): item for item in novels if isinstance(item, Mapping) and item.get("id")}
        return data

    def save(self) -> None:
        if self.path is None:
            return
        save_json(self.path, self.data)

    # ------------------------------------------------------------------
    def read_entity(self, entity_id: str) -> SyncEntity:
        """Return the stored entity; raises :class:`KeyError` when it does not exist."""

        payload = self.data["novels"].get(entity_id)
        if payload is None:
            raise KeyError(entity_id)
        return SyncEntity.from_dict(payload)

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self.data["novels"]

    def write_entity(self, entity: SyncEntity) -> None:
        self.data["novels"][entity.id] = entity.to_dict()
        self.save()

    def write_entities(self, entities: Iterable[SyncEntity]) -> None:
        for entity in entities:
            self.data["novels"][entity.id] = entity.to_dict()
        self.save()

    def read_all_entities(self) -> list[SyncEntity]:
        entities: list[SyncEntity] = []
        for payload in self.data["novels"].values():
            try:
                entities.append(SyncEntity.from_dict(payload))
            except ValueError as err:
                _LOGGER.warning("Skipping malformed stored novel: %s", err)
        return entities

    def create_entity(self, fields: Mapping[str, Any] | None = None, *, entity_id: str | None = None) -> SyncEntity:
        """Create and persist a new entity at version 1."""

        now = datetime.now(tz=UTC)
        payload = dict(fields or {})
        payload["id"] = entity_id or str(uuid4())
        payload["version"] = 1
        payload["updatedAt"] = format_timestamp(now)
        payload.setdefault("createdAt", format_timestamp(now))
        entity = SyncEntity.from_dict(payload, now=now)
        self.write_entity(entity)
        return entity

    def delete_entity(self, entity_id: str) -> bool:
        """Remove an entity and record a tombstone; returns ``False`` if it was absent."""

        existed = self.data["novels"].pop(entity_id, None) is not None
        if entity_id not in self.data["deleted"]:
            self.data["deleted"].append(entity_id)
        self.save()
        return existed

    def deleted_ids(self) -> set[str]:
        return {str(item) for item in self.data["deleted"]}

    # ------------------------------------------------------------------
    def read_settings_bundle(self) -> dict[str, Any]:
        return {
            "folders": deepcopy(self.data["folders"]),
            "tags": deepcopy(self.data["tags"]),
            "settings": deepcopy(self.data["settings"]),
        }

    def write_settings_bundle(self, bundle: Mapping[str, Any]) -> None:
        for key in ("folders", "tags"):
            value = bundle.get(key)
            if isinstance(value, list):
                self.data[key] = deepcopy(value)
        settings = bundle.get("settings")
        if isinstance(settings, Mapping):
            self.data["settings"] = {**DEFAULT_SETTINGS, **settings}
        self.save()

    def clear(self) -> None:
        self.data = deepcopy(DEFAULT_DATA)
        self.save()


__all__ = ["DEFAULT_DATA", "LocalStore"]
