"""Find, create, update and download the drive files that back synced data."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from aiohttp import ClientError, ClientSession

from .const import DEFAULT_API_BASE_URL, DEFAULT_ENTITY_FILE_PREFIX, DEFAULT_REQUEST_TIMEOUT, JSON_MIME_TYPE
from .errors import AuthError, RateLimitExceeded, RemoteError, RemoteReadError, RemoteWriteError
from .models import RemoteFileRef, SyncEntity
from .multipart import content_type_header, encode_document, encode_multipart
from .rate import RateTracker
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)

FILE_FIELDS = "id,name,modifiedTime,size"

# Returns the bearer token for the next request; raises AuthError when signed out.
TokenProvider = Callable[[], Awaitable[str]]


def _quote_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class DriveFileResolver:
    """Map logical names to drive files over the Drive v3 REST API.

    Every request first reserves a slot on the :class:`RateTracker`; when the
    quota is spent the call fails with :class:`RateLimitExceeded` before any
    network traffic. Requests are bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        session: ClientSession,
        token_provider: TokenProvider,
        rate_tracker: RateTracker,
        *,
        base_url: str = DEFAULT_API_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        entity_file_prefix: str = DEFAULT_ENTITY_FILE_PREFIX,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session
        self._token_provider = token_provider
        self.rate = rate_tracker
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.entity_file_prefix = entity_file_prefix
        self.logger = logger or _LOGGER

    # ------------------------------------------------------------------
    async def find_by_name(self, name: str) -> RemoteFileRef | None:
        """Return the first file named exactly ``name``, most recently modified first."""

        params = {
            "q": f"name='{_quote_query_value(name)}' and trashed=false",
            "fields": f"files({FILE_FIELDS})",
            "orderBy": "modifiedTime desc",
            "spaces": "drive",
        }
        _, body = await self._request(
            "GET", f"{self.base_url}/drive/v3/files", params=params, error_cls=RemoteReadError, action="list"
        )
        files = self._parse_file_list(body)
        if not files:
            return None
        if len(files) > 1:
            warn_once(
                self.logger,
                f"duplicate_remote_file:{name}",
                f"{len(files)} remote files are named {name!r}; using the most recent ({files[0].file_id})",
            )
        return files[0]

    async def list_files(self, prefix: str | None = None) -> list[RemoteFileRef]:
        """List the files visible to this app, optionally filtered by name prefix."""

        query = "trashed=false"
        if prefix:
            query = f"name contains '{_quote_query_value(prefix)}' and {query}"
        params = {"q": query, "fields": f"files({FILE_FIELDS})", "spaces": "drive", "pageSize": "1000"}
        _, body = await self._request(
            "GET", f"{self.base_url}/drive/v3/files", params=params, error_cls=RemoteReadError, action="list"
        )
        files = self._parse_file_list(body)
        if prefix:
            # ``contains`` matches word prefixes anywhere in the name.
            files = [ref for ref in files if ref.file_name.startswith(prefix)]
        return files

    async def upload(self, name: str, content: str) -> RemoteFileRef:
        """Create a new file called ``name`` holding ``content``."""

        body = encode_multipart({"name": name, "mimeType": JSON_MIME_TYPE}, content)
        _, payload = await self._request(
            "POST",
            f"{self.base_url}/upload/drive/v3/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=body,
            headers={"Content-Type": content_type_header()},
            error_cls=RemoteWriteError,
            action="upload",
        )
        return self._parse_file(payload, RemoteWriteError, fallback_name=name)

    async def update(self, file_id: str, content: str) -> RemoteFileRef:
        """Overwrite the content of an existing file."""

        body = encode_multipart({"mimeType": JSON_MIME_TYPE}, content)
        _, payload = await self._request(
            "PATCH",
            f"{self.base_url}/upload/drive/v3/files/{file_id}",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            data=body,
            headers={"Content-Type": content_type_header()},
            error_cls=RemoteWriteError,
            action="update",
        )
        return self._parse_file(payload, RemoteWriteError)

    async def download(self, file_id: str) -> str:
        _, body = await self._request(
            "GET",
            f"{self.base_url}/drive/v3/files/{file_id}",
            params={"alt": "media"},
            error_cls=RemoteReadError,
            action="download",
        )
        try:
            return body.decode("utf-8")
        except UnicodeDecodeError as err:
            raise RemoteReadError(f"download of {file_id} returned undecodable content: {err}") from err

    async def delete(self, file_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self.base_url}/drive/v3/files/{file_id}",
            error_cls=RemoteReadError,
            action="delete",
            allow_missing=True,
        )

    async def sync_file(self, name: str, content: str) -> RemoteFileRef:
        """Find-or-create: update the file called ``name`` or upload it when absent."""

        existing = await self.find_by_name(name)
        if existing is not None:
            return await self.update(existing.file_id, content)
        return await self.upload(name, content)

    def entity_file_name(self, entity_id: str) -> str:
        return f"{self.entity_file_prefix}{entity_id}.json"

    async def sync_entity(self, entity: SyncEntity) -> RemoteFileRef:
        """Push one entity to its own file, creating the file on first sync."""

        return await self.sync_file(self.entity_file_name(entity.id), encode_document(entity.to_dict()))

    async def download_by_name(self, name: str) -> str | None:
        existing = await self.find_by_name(name)
        if existing is None:
            return None
        return await self.download(existing.file_id)

    # ------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        url: str,
        *,
        error_cls: type[RemoteError],
        action: str,
        params: Mapping[str, str] | None = None,
        data: str | None = None,
        headers: Mapping[str, str] | None = None,
        allow_missing: bool = False,
    ) -> tuple[int, bytes]:
        self.rate.acquire()
        token = await self._token_provider()
        request_headers = {"Authorization": f"Bearer {token}"}
        if headers:
            request_headers.update(headers)
        try:
            async with asyncio.timeout(self.timeout):
                async with self.session.request(
                    method, url, params=params, data=data, headers=request_headers
                ) as resp:
                    body = await resp.read()
                    status = resp.status
        except TimeoutError as err:
            raise error_cls(f"{action} timed out after {self.timeout}s", reason="timeout") from err
        except ClientError as err:
            raise error_cls(f"{action} request failed: {err}", reason="network") from err

        if status == 401:
            raise AuthError(f"{action} rejected the access token", reason="unauthorized")
        if status == 429:
            raise RateLimitExceeded(f"{action} throttled by the remote service", reason="remote_quota")
        if status == 404 and allow_missing:
            return status, body
        if status >= 300:
            snippet = body[:200].decode("utf-8", "replace")
            raise error_cls(f"{action} failed: HTTP {status} {snippet}".rstrip(), status=status, reason="http")
        return status, body

    def _parse_file_list(self, body: bytes) -> list[RemoteFileRef]:
        payload = self._parse_json(body, RemoteReadError)
        files = payload.get("files") if isinstance(payload, Mapping) else None
        if not isinstance(files, list):
            raise RemoteReadError("file listing is missing the 'files' array", reason="malformed")
        refs: list[RemoteFileRef] = []
        for item in files:
            if not isinstance(item, Mapping):
                continue
            try:
                refs.append(RemoteFileRef.from_payload(item))
            except ValueError:
                continue
        return refs

    def _parse_file(
        self, body: bytes, error_cls: type[RemoteError], *, fallback_name: str = ""
    ) -> RemoteFileRef:
        payload = self._parse_json(body, error_cls)
        if not isinstance(payload, Mapping):
            raise error_cls("file resource is not a JSON object", reason="malformed")
        if fallback_name and not payload.get("name"):
            payload = {**payload, "name": fallback_name}
        try:
            return RemoteFileRef.from_payload(payload)
        except ValueError as err:
            raise error_cls(str(err), reason="malformed") from err

    @staticmethod
    def _parse_json(body: bytes, error_cls: type[RemoteError]) -> Any:
        try:
            return json.loads(body.decode("utf-8")) if body else {}
        except ValueError as err:
            raise error_cls(f"malformed response body: {err}", reason="malformed") from err


__all__ = ["DriveFileResolver", "TokenProvider"]
