"""Shared test fixtures for asset sync."""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import httpx
import pytest

from assetsync.services.change_detector import ChangeDetector
from assetsync.services.checkpoint_store import JsonFileCheckpointStore
from assetsync.services.fetcher import Fetcher
from assetsync.services.github_client import GitHubClient
from assetsync.services.task_registry import TaskRegistry
from assetsync.services.url_resolver import UrlResolver

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

API_URL = "https://api.github.com"
RAW_HOST = "https://raw.githubusercontent.com"

_CONTENTS_RE = re.compile(r"^/repos/([^/]+/[^/]+)/contents/(.*)$")
_COMMITS_RE = re.compile(r"^/repos/([^/]+/[^/]+)/commits$")


class FakeUpstream:
    """In-memory GitHub: contents listings, path commit history and raw files.

    Served through ``httpx.MockTransport`` so the real ``GitHubClient`` code
    path runs in every test.
    """

    def __init__(self) -> None:
        self.listings: dict[str, list[dict[str, Any]]] = {}
        self.commits: dict[str, str] = {}
        self.files: dict[str, tuple[bytes, str]] = {}
        self.failures: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def add_listing(self, repo: str, path: str, names: list[str]) -> None:
        entries = []
        for name in names:
            url = f"{RAW_HOST}/{repo}/main/{path}/{name}"
            entries.append(
                {
                    "name": name,
                    "path": f"{path}/{name}",
                    "download_url": url,
                    "size": 2048,
                    "type": "file",
                }
            )
            self.files.setdefault(url, (f"data:{name}".encode(), "image/png"))
        self.listings[f"{repo}/{path}"] = entries

    def add_dir_entry(self, repo: str, path: str, name: str) -> None:
        self.listings[f"{repo}/{path}"].append(
            {
                "name": name,
                "path": f"{path}/{name}",
                "download_url": None,
                "size": 0,
                "type": "dir",
            }
        )

    def set_commit(self, repo: str, path: str, sha: str) -> None:
        self.commits[f"{repo}:{path}"] = sha

    def add_file(self, url: str, body: str | bytes, content_type: str = "text/plain") -> None:
        data = body.encode() if isinstance(body, str) else body
        self.files[url] = (data, content_type)

    def add_json(self, url: str, payload: Any) -> None:
        self.add_file(url, json.dumps(payload), "application/json")

    def fail(self, url_prefix: str, status_code: int) -> None:
        self.failures[url_prefix] = status_code

    def count(self, url_prefix: str) -> int:
        return sum(1 for r in self.requests if str(r.url).startswith(url_prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        full = str(request.url)
        for prefix, status_code in self.failures.items():
            if full.startswith(prefix):
                return httpx.Response(status_code, text="failure")

        path = unquote(request.url.path)
        if f"{request.url.scheme}://{request.url.host}" == API_URL:
            match = _CONTENTS_RE.match(path)
            if match:
                key = f"{match.group(1)}/{match.group(2)}"
                if key not in self.listings:
                    return httpx.Response(404, json={"message": "Not Found"})
                return httpx.Response(200, json=self.listings[key])
            match = _COMMITS_RE.match(path)
            if match:
                sha = self.commits.get(f"{match.group(1)}:{request.url.params.get('path')}")
                return httpx.Response(200, json=[{"sha": sha}] if sha else [])
            return httpx.Response(404, json={"message": "Not Found"})

        key = f"{request.url.scheme}://{request.url.host}{path}"
        if key not in self.files:
            return httpx.Response(404, text="404: Not Found")
        data, content_type = self.files[key]
        return httpx.Response(200, content=data, headers={"content-type": content_type})


def build_registry(store: JsonFileCheckpointStore, github: GitHubClient) -> TaskRegistry:
    return TaskRegistry(
        store=store,
        detector=ChangeDetector(store, github),
        fetcher=Fetcher(github, concurrency=5),
        resolver=UrlResolver(github),
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def github(upstream: FakeUpstream) -> AsyncGenerator[GitHubClient]:
    """GitHubClient backed by the fake upstream."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    async with GitHubClient(API_URL, client=http_client) as client:
        yield client
    await http_client.aclose()


@pytest.fixture
def store(tmp_path: Path) -> JsonFileCheckpointStore:
    return JsonFileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
async def registry(
    store: JsonFileCheckpointStore, github: GitHubClient
) -> AsyncGenerator[TaskRegistry]:
    """Registry over the fake upstream; timers are cancelled on teardown."""
    reg = build_registry(store, github)
    yield reg
    await reg.stop()
