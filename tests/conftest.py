"""Shared fixtures: an in-memory Dropbox API served through httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Set

import httpx
import pytest

from dropfolio.app_context import build_context
from dropfolio.config import GlobalConfig, parse_global_config

API_URL = "https://api.dropbox.test/2"
TOKEN_URL = "https://api.dropbox.test/oauth2/token"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_delay: float) -> None:
    return None


class FakeDropbox:
    """Just enough of the Dropbox v2 API for the lister, resolver and auth flows."""

    def __init__(self, folders: Optional[Dict[str, List[str]]] = None, *, page_size: int = 1000) -> None:
        self.folders: Dict[str, List[str]] = dict(folders or {})
        self.page_size = page_size
        self.calls: List[tuple] = []
        self.failing_folders: Set[str] = set()
        self.failing_links: Set[str] = set()
        self.failing_batches: Set[str] = set()
        self.token_exchanges = 0
        self.valid_tokens: Optional[Set[str]] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def set_folder(self, folder: str, names: List[str]) -> None:
        self.folders[folder] = list(names)

    def endpoint_calls(self, endpoint: str) -> List[Any]:
        return [body for name, body in self.calls if name == endpoint]

    def _entries(self, folder: str, recursive: bool) -> List[Dict[str, Any]]:
        entries = []
        for name in self.folders.get(folder, []):
            if name.endswith("/"):
                child = f"{folder}/{name.rstrip('/')}"
                entries.append({".tag": "folder", "name": name.rstrip("/"), "path_display": child})
                if recursive:
                    entries.extend(self._entries(child, recursive))
            else:
                entries.append(
                    {".tag": "file", "name": name, "path_display": f"{folder}/{name}", "size": 1024}
                )
        return entries

    def _page(self, folder: str, recursive: bool, offset: int) -> Dict[str, Any]:
        entries = self._entries(folder, recursive)
        chunk = entries[offset : offset + self.page_size]
        has_more = offset + self.page_size < len(entries)
        return {
            "entries": chunk,
            "cursor": json.dumps([folder, recursive, offset + self.page_size]),
            "has_more": has_more,
        }

    @staticmethod
    def link_for(path: str) -> str:
        return f"https://dl.dropbox.test{path}"

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            self.token_exchanges += 1
            self.calls.append(("oauth2/token", dict(httpx.QueryParams(request.content.decode()))))
            return httpx.Response(
                200,
                json={"access_token": f"refreshed-{self.token_exchanges}", "expires_in": 14400},
            )

        endpoint = request.url.path.split("/2/", 1)[1]
        body = json.loads(request.content or b"null")
        self.calls.append((endpoint, body))

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if self.valid_tokens is not None and token not in self.valid_tokens:
            return httpx.Response(401, json={"error_summary": "expired_access_token/"})

        if endpoint == "files/list_folder":
            folder = body["path"]
            if folder in self.failing_folders or folder not in self.folders:
                return httpx.Response(409, json={"error_summary": "path/not_found/"})
            return httpx.Response(200, json=self._page(folder, body["recursive"], 0))

        if endpoint == "files/list_folder/continue":
            folder, recursive, offset = json.loads(body["cursor"])
            return httpx.Response(200, json=self._page(folder, recursive, offset))

        if endpoint == "files/get_temporary_link":
            path = body["path"]
            if path in self.failing_links:
                return httpx.Response(409, json={"error_summary": "path/not_found/"})
            return httpx.Response(200, json={"link": self.link_for(path)})

        if endpoint == "files/get_temporary_link_batch":
            paths = [entry["path"] for entry in body["entries"]]
            if self.failing_batches.intersection(paths):
                return httpx.Response(503, text="batch unavailable")
            entries = []
            for path in paths:
                if path in self.failing_links:
                    entries.append({".tag": "failure", "failure": "path/not_found/"})
                else:
                    entries.append({".tag": "success", "link": self.link_for(path)})
            return httpx.Response(200, json={"entries": entries})

        if endpoint == "users/get_current_account":
            return httpx.Response(
                200,
                json={"name": {"display_name": "Portfolio Owner"}, "email": "owner@example.test"},
            )

        return httpx.Response(400, json={"error_summary": "unknown_endpoint/"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def make_config(storage_dir, **sections: Any) -> GlobalConfig:
    payload: Dict[str, Any] = {
        "dropbox": {"access_token": "test-token", "api_url": API_URL, "token_url": TOKEN_URL},
        "buckets": {
            "baseImages": {"folder": "/base"},
            "overlayImages": {"folder": "/overlay"},
        },
        "cache": {"store": "none"},
        "runtime": {"storage_dir": str(storage_dir), "default_retry": {"attempts": 1}},
    }
    for key, value in sections.items():
        if isinstance(value, dict) and isinstance(payload.get(key), dict):
            payload[key] = {**payload[key], **value}
        else:
            payload[key] = value
    return parse_global_config(payload, environ={})


def identity_shuffle(_items: list) -> None:
    return None


@pytest.fixture
def fake_dropbox() -> FakeDropbox:
    return FakeDropbox(
        {
            "/base": [f"b{i}.jpg" for i in range(5)],
            "/overlay": [f"o{i}.png" for i in range(3)],
        }
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context_factory(tmp_path, fake_dropbox, clock):
    def factory(config: Optional[GlobalConfig] = None, **kwargs: Any):
        kwargs.setdefault("store", None)
        kwargs.setdefault("shuffle", identity_shuffle)
        return build_context(
            config or make_config(tmp_path / "state"),
            http=fake_dropbox.client(),
            clock=clock,
            sleep=no_sleep,
            **kwargs,
        )

    return factory
