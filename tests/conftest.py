from __future__ import annotations

import asyncio
import json
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from novel_sync.auth import Credential, CredentialStore
from novel_sync.multipart import decode_multipart
from novel_sync.storage import LocalStore

_NAME_EQ = re.compile(r"name='((?:[^'\\]|\\.)*)'")
_NAME_CONTAINS = re.compile(r"name contains '((?:[^'\\]|\\.)*)'")


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


class DummyResp:
    def __init__(self, status: int = 200, body: Any = b"", headers: dict[str, str] | None = None) -> None:
        if isinstance(body, dict | list):
            body = json.dumps(body).encode()
        elif isinstance(body, str):
            body = body.encode()
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def read(self) -> bytes:
        return self._body

    async def json(self, content_type=None):
        return json.loads(self._body.decode())


class SlowResp(DummyResp):
    def __init__(self, delay: float, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.delay = delay

    async def __aenter__(self):
        await asyncio.sleep(self.delay)
        return self


class FakeDriveSession:
    """In-memory stand-in for the Drive v3 REST API.

    ``queued`` responses (or exceptions) are served before any routing, which
    lets tests inject failures for the next N requests.
    """

    def __init__(self) -> None:
        self.files: dict[str, dict[str, Any]] = {}
        self.calls: list[dict[str, Any]] = []
        self.queued: list[DummyResp | Exception] = []
        self.token_responses: list[DummyResp] = []
        self.token_requests: list[dict[str, Any]] = []
        self.closed = False
        self._counter = 0
        self._base = datetime(2025, 1, 1, tzinfo=UTC)

    # helpers -----------------------------------------------------------
    def add_file(self, name: str, content: str) -> str:
        self._counter += 1
        file_id = f"file-{self._counter}"
        self.files[file_id] = {
            "id": file_id,
            "name": name,
            "content": content,
            "modifiedTime": (self._base + timedelta(minutes=self._counter)).isoformat().replace("+00:00", "Z"),
        }
        return file_id

    def content_of(self, name: str) -> str | None:
        for item in self.files.values():
            if item["name"] == name:
                return item["content"]
        return None

    def json_of(self, name: str) -> Any:
        content = self.content_of(name)
        return json.loads(content) if content is not None else None

    def calls_for(self, method: str) -> list[dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    def _resource(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": item["id"],
            "name": item["name"],
            "modifiedTime": item["modifiedTime"],
            "size": str(len(item["content"].encode())),
        }

    # aiohttp surface ---------------------------------------------------
    def request(self, method, url, params=None, data=None, headers=None):
        self.calls.append({"method": method, "url": url, "params": dict(params or {}), "data": data, "headers": headers})
        if self.queued:
            item = self.queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        params = params or {}
        path = url.split("googleapis.com", 1)[-1]
        if method == "GET" and path == "/drive/v3/files":
            query = params.get("q", "")
            match = _NAME_EQ.search(query)
            contains = _NAME_CONTAINS.search(query)
            items = list(self.files.values())
            if match:
                items = [item for item in items if item["name"] == _unescape(match.group(1))]
            elif contains:
                items = [item for item in items if _unescape(contains.group(1)) in item["name"]]
            items.sort(key=lambda item: item["modifiedTime"], reverse=True)
            return DummyResp(200, {"files": [self._resource(item) for item in items]})
        if method == "POST" and path == "/upload/drive/v3/files":
            metadata, content = decode_multipart(data)
            file_id = self.add_file(metadata["name"], content)
            return DummyResp(200, self._resource(self.files[file_id]))
        if path.startswith("/upload/drive/v3/files/") and method == "PATCH":
            file_id = path.rsplit("/", 1)[-1]
            if file_id not in self.files:
                return DummyResp(404, {"error": "not found"})
            _, content = decode_multipart(data)
            self._counter += 1
            self.files[file_id]["content"] = content
            self.files[file_id]["modifiedTime"] = (
                (self._base + timedelta(minutes=self._counter)).isoformat().replace("+00:00", "Z")
            )
            return DummyResp(200, self._resource(self.files[file_id]))
        if path.startswith("/drive/v3/files/"):
            file_id = path.rsplit("/", 1)[-1]
            if file_id not in self.files:
                return DummyResp(404, {"error": "not found"})
            if method == "DELETE":
                del self.files[file_id]
                return DummyResp(204)
            if method == "GET" and params.get("alt") == "media":
                return DummyResp(200, self.files[file_id]["content"])
        return DummyResp(400, {"error": f"unexpected {method} {url}"})

    def post(self, url, data=None, json=None):
        self.token_requests.append({"url": url, "data": dict(data or {})})
        return self.token_responses.pop(0)

    async def close(self) -> None:
        self.closed = True


class FixedClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def drive() -> FakeDriveSession:
    return FakeDriveSession()


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(tmp_path / "data.json")


@pytest.fixture
def credentials(tmp_path: Path, clock: FixedClock) -> CredentialStore:
    return CredentialStore(tmp_path / "credential.json", clock=clock)


@pytest.fixture
def token_payload() -> Callable[..., dict[str, Any]]:
    def _make(access_token: str = "token-1", hours: float = 1, refresh_token: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"access_token": access_token, "expires_in": int(hours * 3600)}
        if refresh_token:
            payload["refresh_token"] = refresh_token
        return payload

    return _make


@pytest.fixture
def valid_credential(clock: FixedClock) -> Credential:
    return Credential(access_token="token-1", expires_at=clock.now + timedelta(hours=1))
