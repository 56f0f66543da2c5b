"""Fetcher: filtered directory listings, additive mirroring, JSON snapshots.

Mirroring is additive only. A local file whose name matches a remote entry
is never re-downloaded or overwritten (size and content are not compared),
and local files that disappeared upstream are never pruned.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from assetsync.exceptions import RateLimitedError, TransientNetworkError
from assetsync.services.sources import DirectoryLocator

if TYPE_CHECKING:
    from assetsync.services.github_client import GitHubClient, RemoteFile
    from assetsync.services.sources import SourceDescriptor

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_CONCURRENCY = 5


@dataclass
class MirrorResult:
    """Counts from one directory mirror pass."""

    downloaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


def normalize_json_text(text: str) -> tuple[str, bool]:
    """Re-serialize JSON with stable formatting.

    Returns ``(text, parsed)``; when the payload is not valid JSON the raw
    text is returned untouched with ``parsed=False``.
    """
    try:
        data = json.loads(text)
    except ValueError:
        return text, False
    return json.dumps(data, indent=2, ensure_ascii=False), True


def _write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _write_bytes_exclusive(path: Path, data: bytes) -> bool:
    """Create ``path`` with ``data``; returns False if it already exists."""
    try:
        with open(path, "xb") as handle:
            handle.write(data)
    except FileExistsError:
        return False
    return True


def list_local_files(directory: Path, descriptor: SourceDescriptor) -> list[str]:
    """Visible local files in ``directory`` that pass the extension allow-list."""
    if not directory.is_dir():
        return []
    allowed = descriptor.filter_rules.allowed_extensions
    names: list[str] = []
    for entry in directory.iterdir():
        if entry.name.startswith(".") or not entry.is_file():
            continue
        if allowed and entry.suffix.lower() not in allowed:
            continue
        names.append(entry.name)
    return sorted(names)


class Fetcher:
    """Retrieves remote content and writes it under the configured local targets."""

    def __init__(
        self,
        github: GitHubClient,
        *,
        concurrency: int = DEFAULT_DOWNLOAD_CONCURRENCY,
    ) -> None:
        self.github = github
        self.concurrency = concurrency

    def _accepts(self, descriptor: SourceDescriptor, remote: RemoteFile) -> bool:
        return remote.type == "file" and descriptor.filter_rules.accepts(remote.name)

    async def fetch_directory_files(self, descriptor: SourceDescriptor) -> list[RemoteFile]:
        """List the remote folder of a directory mirror, filtered.

        A rate-limited listing (HTTP 403) yields an empty list and a warning
        rather than an error.
        """
        locator = descriptor.remote_locator
        if not isinstance(locator, DirectoryLocator):
            msg = f"Source {descriptor.name!r} is not a directory mirror"
            raise TypeError(msg)
        try:
            files = await self.github.list_directory(locator.repo, locator.path)
        except RateLimitedError:
            logger.warning(
                "GitHub API rate limit while listing %s/%s, using an empty file list",
                locator.repo,
                locator.path,
            )
            return []
        return [f for f in files if self._accepts(descriptor, f)]

    async def mirror_directory(
        self, descriptor: SourceDescriptor, files: list[RemoteFile]
    ) -> MirrorResult:
        """Download every listed file not yet present locally.

        Downloads run concurrently inside a fixed window so the remote host
        is not flooded. A failed file is counted, not raised.
        """
        if descriptor.local_target is None:
            msg = f"Source {descriptor.name!r} has no local target"
            raise TypeError(msg)
        target_dir = descriptor.local_target
        await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)

        result = MirrorResult()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(remote: RemoteFile) -> None:
            # Filter rules may have changed since the listing was taken.
            if not self._accepts(descriptor, remote):
                return
            local_path = target_dir / remote.name
            if await asyncio.to_thread(local_path.exists):
                result.skipped.append(remote.name)
                return
            if not remote.download_url:
                logger.error("No download URL for %s in %s", remote.name, descriptor.name)
                result.failed.append(remote.name)
                return
            async with semaphore:
                logger.info("Downloading %s (%.2f KB)", remote.name, remote.size / 1024)
                try:
                    data = await self.github.get_bytes(remote.download_url)
                    created = await asyncio.to_thread(_write_bytes_exclusive, local_path, data)
                except (TransientNetworkError, OSError) as exc:
                    logger.error("Failed to download %s: %s", remote.name, exc)
                    result.failed.append(remote.name)
                    return
            if created:
                result.downloaded.append(remote.name)
            else:
                result.skipped.append(remote.name)

        await asyncio.gather(*(_one(remote) for remote in files))
        logger.info(
            "Mirror %s: %d downloaded, %d skipped, %d failed",
            descriptor.name,
            len(result.downloaded),
            len(result.skipped),
            len(result.failed),
        )
        return result

    async def fetch_and_persist(self, url: str, local_path: Path) -> bool:
        """Download ``url`` as text and write it to ``local_path``.

        JSON payloads are normalized to two-space indentation; anything that
        fails to parse is written verbatim so the fetched data is never lost.
        Returns False (after logging) on network or disk failure.
        """
        logger.info("Downloading JSON data: %s -> %s", url, local_path)
        try:
            document = await self.github.get_text(url)
        except TransientNetworkError as exc:
            logger.error("Failed to download %s: %s", url, exc)
            return False

        text, parsed = normalize_json_text(document.text)
        if not parsed:
            logger.warning("Response from %s is not valid JSON, writing raw text", url)

        try:
            await asyncio.to_thread(_write_text, local_path, text)
        except OSError as exc:
            logger.error("Failed to write %s: %s", local_path, exc)
            return False
        logger.info("Saved %s", local_path)
        return True

    async def directory_stats(
        self, descriptor: SourceDescriptor, remote_files: list[RemoteFile]
    ) -> dict[str, int]:
        """``{local_files, remote_files, missing_files}`` for status reporting."""
        if descriptor.local_target is None:
            return {}
        local_names = await asyncio.to_thread(
            list_local_files, descriptor.local_target, descriptor
        )
        local = set(local_names)
        remote_names = {f.name for f in remote_files}
        return {
            "local_files": len(local),
            "remote_files": len(remote_names),
            "missing_files": len(remote_names - local),
        }
