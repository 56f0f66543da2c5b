"""Change detection: decide whether a source must be re-downloaded.

Three strategies, chosen by what the source points at:

- Directory listing diff: compare the sorted remote file names against the
  stored ``FileListSnapshot`` (set equality via sorted-sequence comparison).
- Commit SHA lookup: for GitHub-hosted files, the SHA of the latest commit
  touching the path is compared against the stored ``CommitCheckpoint``.
- URL hash fallback: for other hosts, a 32-bit hash of the *URL string*
  (not the content) is compared against the stored ``ContentHashCheckpoint``.
  This only notices that the watched URL itself changed.

Ambiguous answers fail open: an absent checkpoint, a failed lookup or a rate
limit all report "changed" so data is never silently missed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from assetsync.exceptions import MalformedRemoteDataError, TransientNetworkError
from assetsync.services.checkpoint_store import (
    Checkpoint,
    CommitCheckpoint,
    ContentHashCheckpoint,
    FileListSnapshot,
)
from assetsync.services.datetime_service import epoch_millis

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from assetsync.services.checkpoint_store import CheckpointStore
    from assetsync.services.github_client import GitHubClient
    from assetsync.services.sources import SourceDescriptor

logger = logging.getLogger(__name__)

_RAW_URL_RE = re.compile(r"https?://raw\.githubusercontent\.com/([^/]+)/([^/]+)/([^/]+)/(.+)")
_BLOB_URL_RE = re.compile(r"https?://(?:www\.)?github\.com/([^/]+)/([^/]+)/blob/([^/]+)/(.+)")


@dataclass(frozen=True)
class GitHubFileRef:
    owner: str
    repo: str
    branch: str
    path: str


@dataclass(frozen=True)
class ChangeDecision:
    """Outcome of a change check.

    ``checkpoint`` is the fingerprint to persist after a successful fetch; it
    is None when the remote fingerprint could not be determined.
    """

    changed: bool
    checkpoint: Checkpoint | None
    reason: str


def parse_github_url(url: str) -> GitHubFileRef | None:
    """Extract ``(owner, repo, branch, path)`` from a raw or blob GitHub URL."""
    candidate = url.split("#", 1)[0].split("?", 1)[0]
    for pattern in (_RAW_URL_RE, _BLOB_URL_RE):
        match = pattern.match(candidate)
        if match:
            owner, repo, branch, path = match.groups()
            return GitHubFileRef(owner=owner, repo=repo, branch=branch, path=path)
    return None


def url_hash(url: str) -> str:
    """Order-dependent 32-bit string hash (``h = h * 31 + c``) of the URL, as hex.

    Runs over UTF-16 code units so values agree with hashes recorded by
    earlier deployments of the bot.
    """
    encoded = url.encode("utf-16-le")
    value = 0
    for i in range(0, len(encoded), 2):
        unit = encoded[i] | (encoded[i + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def diff_file_lists(previous: Iterable[str] | None, current: Iterable[str]) -> bool:
    """Return True when the two name collections differ as sets of names.

    A missing previous list always counts as changed.
    """
    if previous is None:
        return True
    before = sorted(previous)
    after = sorted(current)
    if len(before) != len(after):
        return True
    return any(a != b for a, b in zip(before, after, strict=True))


class ChangeDetector:
    """Compares remote fingerprints with the checkpoint store."""

    def __init__(self, store: CheckpointStore, github: GitHubClient) -> None:
        self.store = store
        self.github = github

    async def check_directory(
        self, descriptor: SourceDescriptor, remote_names: Iterable[str]
    ) -> ChangeDecision:
        names = sorted(remote_names)
        previous = await self.store.load(descriptor.name)
        snapshot = FileListSnapshot(files=tuple(names), timestamp=epoch_millis())
        if not isinstance(previous, FileListSnapshot):
            return ChangeDecision(True, snapshot, "no previous file list")
        if diff_file_lists(previous.files, names):
            return ChangeDecision(
                True,
                snapshot,
                f"file list changed ({len(previous.files)} -> {len(names)} files)",
            )
        return ChangeDecision(False, snapshot, "file list unchanged")

    async def remote_fingerprint(
        self, url: str
    ) -> CommitCheckpoint | ContentHashCheckpoint | None:
        """Fingerprint ``url``: latest commit SHA on GitHub, URL hash elsewhere.

        Returns None when a GitHub lookup fails or finds no commit.
        """
        ref = parse_github_url(url)
        if ref is None:
            return ContentHashCheckpoint(
                hash=url_hash(url), source_url=url, timestamp=epoch_millis()
            )
        try:
            sha = await self.github.latest_commit_sha(ref.owner, ref.repo, ref.path)
        except (TransientNetworkError, MalformedRemoteDataError) as exc:
            logger.warning("Commit lookup for %s failed, assuming changed: %s", url, exc)
            return None
        if sha is None:
            logger.warning("No commit found for %s/%s:%s", ref.owner, ref.repo, ref.path)
            return None
        return CommitCheckpoint(commit_hash=sha, source_url=url, timestamp=epoch_millis())

    async def check_url(self, descriptor: SourceDescriptor, url: str) -> ChangeDecision:
        current = await self.remote_fingerprint(url)
        previous = await self.store.load(descriptor.name)
        if current is None:
            return ChangeDecision(True, None, "remote fingerprint unavailable")
        return _compare(previous, current)

    async def check_url_set(
        self, descriptor: SourceDescriptor, urls: Mapping[str, str]
    ) -> ChangeDecision:
        """Detect a change in a labelled set of URLs via the URL hash fallback."""
        joined = "\n".join(f"{label}={urls[label]}" for label in sorted(urls))
        current = ContentHashCheckpoint(
            hash=url_hash(joined), source_url=joined, timestamp=epoch_millis()
        )
        previous = await self.store.load(descriptor.name)
        return _compare(previous, current)


def _compare(
    previous: Checkpoint | None, current: CommitCheckpoint | ContentHashCheckpoint
) -> ChangeDecision:
    if isinstance(current, CommitCheckpoint):
        if not isinstance(previous, CommitCheckpoint):
            return ChangeDecision(True, current, f"no previous commit -> {current.commit_hash}")
        if previous.source_url != current.source_url:
            return ChangeDecision(
                True, current, f"source URL changed {previous.source_url} -> {current.source_url}"
            )
        if previous.commit_hash != current.commit_hash:
            return ChangeDecision(
                True, current, f"commit changed {previous.commit_hash} -> {current.commit_hash}"
            )
        return ChangeDecision(False, current, f"commit unchanged {current.commit_hash}")

    if not isinstance(previous, ContentHashCheckpoint):
        return ChangeDecision(True, current, f"no previous hash -> {current.hash}")
    if previous.hash != current.hash:
        return ChangeDecision(True, current, f"hash changed {previous.hash} -> {current.hash}")
    return ChangeDecision(False, current, f"hash unchanged {current.hash}")
