"""Validated configuration for the sync layer."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import voluptuous as vol

from .const import (
    CONF_API_BASE_URL,
    CONF_BUNDLE_FILE_NAME,
    CONF_CLIENT_ID,
    CONF_CLIENT_SECRET,
    CONF_DAILY_LIMIT,
    CONF_DEBOUNCE_SECONDS,
    CONF_ENTITY_FILE_PREFIX,
    CONF_REQUEST_TIMEOUT,
    CONF_SCOPE,
    CONF_SYNC_INTERVAL,
    CONF_TOKEN_REFRESH_THRESHOLD,
    CONF_TOKEN_URL,
    DEFAULT_API_BASE_URL,
    DEFAULT_BUNDLE_FILE_NAME,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_ENTITY_FILE_PREFIX,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SCOPE,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_TOKEN_REFRESH_THRESHOLD,
    DEFAULT_TOKEN_URL,
    MIN_SYNC_INTERVAL,
)

_NON_EMPTY = vol.All(str, str.strip, vol.Length(min=1))
_URL = vol.All(_NON_EMPTY, vol.Match(r"^https?://"), lambda value: value.rstrip("/"))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_CLIENT_ID, default=""): vol.All(str, str.strip),
        vol.Optional(CONF_CLIENT_SECRET, default=""): vol.All(str, str.strip),
        vol.Optional(CONF_SCOPE, default=DEFAULT_SCOPE): _NON_EMPTY,
        vol.Optional(CONF_API_BASE_URL, default=DEFAULT_API_BASE_URL): _URL,
        vol.Optional(CONF_TOKEN_URL, default=DEFAULT_TOKEN_URL): _URL,
        vol.Optional(CONF_BUNDLE_FILE_NAME, default=DEFAULT_BUNDLE_FILE_NAME): _NON_EMPTY,
        vol.Optional(CONF_ENTITY_FILE_PREFIX, default=DEFAULT_ENTITY_FILE_PREFIX): _NON_EMPTY,
        vol.Optional(CONF_DEBOUNCE_SECONDS, default=DEFAULT_DEBOUNCE_SECONDS): vol.All(
            vol.Coerce(float), vol.Range(min=0)
        ),
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=MIN_SYNC_INTERVAL)
        ),
        vol.Optional(CONF_DAILY_LIMIT, default=DEFAULT_DAILY_LIMIT): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
        vol.Optional(CONF_TOKEN_REFRESH_THRESHOLD, default=DEFAULT_TOKEN_REFRESH_THRESHOLD): vol.All(
            vol.Coerce(int), vol.Range(min=0)
        ),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True, frozen=True)
class SyncConfig:
    """Configuration required to run the sync manager."""

    client_id: str = ""
    client_secret: str = ""
    scope: str = DEFAULT_SCOPE
    api_base_url: str = DEFAULT_API_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL
    bundle_file_name: str = DEFAULT_BUNDLE_FILE_NAME
    entity_file_prefix: str = DEFAULT_ENTITY_FILE_PREFIX
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    daily_limit: int = DEFAULT_DAILY_LIMIT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    token_refresh_threshold: int = DEFAULT_TOKEN_REFRESH_THRESHOLD

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None = None) -> SyncConfig:
        """Validate ``options`` and return a config; raises :class:`voluptuous.Invalid`."""

        data = CONFIG_SCHEMA(dict(options or {}))
        return cls(**data)

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.token_url)

    def to_options(self) -> dict[str, Any]:
        return {
            CONF_CLIENT_ID: self.client_id,
            CONF_CLIENT_SECRET: self.client_secret,
            CONF_SCOPE: self.scope,
            CONF_API_BASE_URL: self.api_base_url,
            CONF_TOKEN_URL: self.token_url,
            CONF_BUNDLE_FILE_NAME: self.bundle_file_name,
            CONF_ENTITY_FILE_PREFIX: self.entity_file_prefix,
            CONF_DEBOUNCE_SECONDS: self.debounce_seconds,
            CONF_SYNC_INTERVAL: self.sync_interval,
            CONF_DAILY_LIMIT: self.daily_limit,
            CONF_REQUEST_TIMEOUT: self.request_timeout,
            CONF_TOKEN_REFRESH_THRESHOLD: self.token_refresh_threshold,
        }


__all__ = ["CONFIG_SCHEMA", "SyncConfig"]
