"""GitHub HTTP access: contents listing, path commit history, raw downloads."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from assetsync.config import DEFAULT_USER_AGENT
from assetsync.exceptions import MalformedRemoteDataError, RateLimitedError, TransientNetworkError

logger = logging.getLogger(__name__)

GITHUB_API_ACCEPT = "application/vnd.github.v3+json"
RAW_ACCEPT = "application/json, text/plain, */*"


@dataclass(frozen=True)
class RemoteFile:
    """One entry of a GitHub contents listing."""

    name: str
    path: str
    download_url: str | None
    size: int
    type: str


@dataclass(frozen=True)
class TextDocument:
    """A downloaded text body plus the metadata needed to sniff its shape."""

    url: str
    text: str
    content_type: str


class GitHubClient:
    """Async client for the GitHub REST API and raw file hosts.

    Owns an ``httpx.AsyncClient`` unless one is injected (tests pass a client
    built on ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_url: str = "https://api.github.com",
        *,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.user_agent = user_agent
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _api_headers(self) -> dict[str, str]:
        return {"User-Agent": self.user_agent, "Accept": GITHUB_API_ACCEPT}

    async def _get(
        self,
        url: str,
        *,
        headers: dict[str, str],
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.get(url, headers=headers, params=params)
        except httpx.HTTPError as exc:
            msg = f"Request to {url} failed: {exc}"
            raise TransientNetworkError(msg, url=url) from exc
        return response

    async def _get_api_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._get(url, headers=self._api_headers(), params=params)
        if response.status_code == 403:
            msg = f"GitHub API rate limit reached for {url}"
            raise RateLimitedError(msg, url=url, status_code=403)
        if not response.is_success:
            msg = f"GitHub API error: {response.status_code} {response.reason_phrase}"
            raise TransientNetworkError(msg, url=url, status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            msg = f"GitHub API returned invalid JSON for {url}"
            raise MalformedRemoteDataError(msg) from exc

    async def list_directory(self, repo: str, path: str) -> list[RemoteFile]:
        """List a repository folder via ``/repos/{owner}/{repo}/contents/{path}``.

        Raises RateLimitedError on HTTP 403 and TransientNetworkError on any
        other failure; filtering is left to the caller.
        """
        url = f"{self.api_url}/repos/{repo}/contents/{quote(path.strip('/'))}"
        payload = await self._get_api_json(url)
        if not isinstance(payload, list):
            msg = f"Expected a directory listing from {url}, got {type(payload).__name__}"
            raise MalformedRemoteDataError(msg)

        files: list[RemoteFile] = []
        for entry in payload:
            if not isinstance(entry, dict) or "name" not in entry:
                logger.warning("Skipping malformed listing entry from %s: %r", url, entry)
                continue
            files.append(
                RemoteFile(
                    name=str(entry["name"]),
                    path=str(entry.get("path", entry["name"])),
                    download_url=entry.get("download_url"),
                    size=int(entry.get("size") or 0),
                    type=str(entry.get("type", "file")),
                )
            )
        return files

    async def latest_commit_sha(self, owner: str, repo: str, path: str) -> str | None:
        """Return the SHA of the most recent commit touching ``path``, or None if none exist."""
        url = f"{self.api_url}/repos/{owner}/{repo}/commits"
        commits = await self._get_api_json(url, params={"path": path, "per_page": 1})
        if not isinstance(commits, list) or not commits:
            return None
        first = commits[0]
        if not isinstance(first, dict) or not first.get("sha"):
            return None
        return str(first["sha"])

    async def get_text(self, url: str) -> TextDocument:
        """Download ``url`` as text."""
        response = await self._get(
            url, headers={"User-Agent": self.user_agent, "Accept": RAW_ACCEPT}
        )
        if not response.is_success:
            msg = f"HTTP {response.status_code}: {response.reason_phrase}"
            raise TransientNetworkError(msg, url=url, status_code=response.status_code)
        return TextDocument(
            url=url,
            text=response.text,
            content_type=response.headers.get("content-type", ""),
        )

    async def get_bytes(self, url: str) -> bytes:
        """Download ``url`` as raw bytes (sprites and other binary assets)."""
        response = await self._get(url, headers={"User-Agent": self.user_agent})
        if not response.is_success:
            msg = f"Download failed: {response.status_code} {response.reason_phrase}"
            raise TransientNetworkError(msg, url=url, status_code=response.status_code)
        return response.content
