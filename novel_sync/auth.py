"""OAuth credential handling for the remote drive."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from aiohttp import ClientError, ClientSession

from .const import CREDENTIAL_STORAGE_KEY, DEFAULT_REQUEST_TIMEOUT
from .errors import AuthError
from .models import format_timestamp, parse_timestamp
from .utils.json_io import load_json, save_json

_LOGGER = logging.getLogger(__name__)

# Runs the user-facing consent step and returns the raw token response.
ConsentProvider = Callable[[], Awaitable[Mapping[str, Any]]]


@dataclass(slots=True, frozen=True)
class Credential:
    """Access token and expiry obtained from the OAuth provider."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: datetime | None = None) -> Credential:
        """Create a :class:`Credential` from a token response or stored payload."""

        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AuthError("access_token missing from response", reason="invalid_token")

        expires_at: datetime | None = None
        expiry = payload.get("expires_at")
        if expiry is not None and expiry != "":
            expires_at = parse_timestamp(expiry)
            if expires_at is None:
                raise AuthError(f"invalid expiry timestamp: {expiry}", reason="invalid_token")
        else:
            expires_in = payload.get("expires_in")
            try:
                seconds = float(expires_in)
            except (TypeError, ValueError) as err:
                raise AuthError("token response carries no expiry", reason="invalid_token") from err
            now = now or datetime.now(tz=UTC)
            expires_at = now + timedelta(seconds=seconds)

        refresh = payload.get("refresh_token")
        refresh_token = str(refresh).strip() if refresh else None
        return cls(access_token=access_token, expires_at=expires_at, refresh_token=refresh_token or None)

    def to_storage(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "access_token": self.access_token,
            "expires_at": format_timestamp(self.expires_at),
        }
        if self.refresh_token:
            payload["refresh_token"] = self.refresh_token
        return payload

    def is_valid(self, *, now: datetime | None = None) -> bool:
        now = now or datetime.now(tz=UTC)
        return self.expires_at > now

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        """Return ``True`` if the token expires in ``seconds`` or less."""

        now = now or datetime.now(tz=UTC)
        return (self.expires_at - now).total_seconds() <= seconds


class CredentialStore:
    """Persist the credential under a fixed key in a small JSON file.

    Expired or malformed payloads are never handed out: expired ones are purged
    on detection, malformed ones are logged and treated as absent.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        key: str = CREDENTIAL_STORAGE_KEY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.key = key
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._memory: dict[str, Any] = {}

    def _read_all(self) -> dict[str, Any]:
        if self.path is None:
            return dict(self._memory)
        if not self.path.exists():
            return {}
        try:
            data = load_json(self.path)
        except (OSError, ValueError) as err:
            _LOGGER.warning("Credential storage unreadable: %s", err)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict[str, Any]) -> None:
        if self.path is None:
            self._memory = data
            return
        save_json(self.path, data)

    def load_token(self, *, keep_refreshable: bool = False) -> Credential | None:
        """Return the stored credential, or ``None`` when absent, malformed or expired.

        With ``keep_refreshable`` an expired credential that carries a refresh
        token is returned as is instead of being purged, so the caller can
        exchange it for a new access token.
        """

        payload = self._read_all().get(self.key)
        if payload is None:
            return None
        if not isinstance(payload, Mapping):
            _LOGGER.warning("Ignoring malformed stored credential")
            return None
        try:
            credential = Credential.from_payload(payload)
        except AuthError as err:
            _LOGGER.warning("Ignoring malformed stored credential: %s", err)
            return None
        if not self.is_valid(credential):
            if keep_refreshable and credential.refresh_token:
                return credential
            _LOGGER.info("Stored credential expired at %s; purging", format_timestamp(credential.expires_at))
            self.clear_token()
            return None
        return credential

    def save_token(self, credential: Credential) -> None:
        data = self._read_all()
        data[self.key] = credential.to_storage()
        self._write_all(data)

    def clear_token(self) -> None:
        data = self._read_all()
        if data.pop(self.key, None) is not None or self.path is None:
            self._write_all(data)

    def is_valid(self, credential: Credential | None) -> bool:
        return credential is not None and credential.is_valid(now=self._clock())


class OAuthClient:
    """Token endpoint wrapper used for code exchange and refresh."""

    def __init__(
        self,
        token_url: str,
        client_id: str,
        *,
        client_secret: str | None = None,
        session: ClientSession | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret or None
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    async def async_close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def async_exchange_code(
        self, code: str, redirect_uri: str, *, code_verifier: str | None = None
    ) -> Credential:
        """Exchange an authorization code obtained by the consent step."""

        form = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        if code_verifier:
            form["code_verifier"] = code_verifier
        return await self._async_token_request(form, action="code exchange")

    async def async_refresh(self, refresh_token: str) -> Credential:
        """Refresh an access token using the stored refresh token."""

        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        credential = await self._async_token_request(form, action="refresh")
        if credential.refresh_token is None:
            # Providers usually omit the refresh token when it is unchanged.
            credential = Credential(
                access_token=credential.access_token,
                expires_at=credential.expires_at,
                refresh_token=refresh_token,
            )
        return credential

    async def _async_token_request(self, form: dict[str, str], *, action: str) -> Credential:
        form["client_id"] = self._client_id
        if self._client_secret:
            form["client_secret"] = self._client_secret
        if self._session is None:
            self._session = ClientSession()
        try:
            async with asyncio.timeout(self._timeout):
                async with self._session.post(self._token_url, data=form) as resp:
                    data = await resp.json(content_type=None)
                    if resp.status >= 400:
                        message = None
                        if isinstance(data, Mapping):
                            message = data.get("error_description") or data.get("error")
                        raise AuthError(message or f"{action} failed: HTTP {resp.status}", reason="denied")
        except (ClientError, TimeoutError, ValueError) as err:
            raise AuthError(f"{action} request failed: {err}", reason="unavailable") from err
        if not isinstance(data, Mapping):
            raise AuthError(f"{action} returned malformed payload", reason="invalid_token")
        return Credential.from_payload(data)


__all__ = ["ConsentProvider", "Credential", "CredentialStore", "OAuthClient"]
