"""Checkpoint persistence: the last known fingerprint of each source.

A missing or unreadable record is reported as "no checkpoint", which forces a
resync on the next run. Over-fetching is preferred to silently going stale.
Writes are best-effort: a failed write is logged and the caller carries on,
since the next run simply detects the same change again.

Two backends share the ``CheckpointStore`` protocol:

- ``JsonFileCheckpointStore``: one JSON document per source in a directory.
- ``SqlCheckpointStore``: one row per source in ``sync_checkpoints``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy.exc import SQLAlchemyError

from assetsync.exceptions import CheckpointIOError
from assetsync.models.checkpoint import SyncCheckpoint
from assetsync.services.datetime_service import epoch_millis, format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass(frozen=True)
class FileListSnapshot:
    """Sorted names of the remote files seen at the last successful mirror."""

    files: tuple[str, ...]
    timestamp: int = 0

    @classmethod
    def of(cls, names: list[str] | tuple[str, ...]) -> FileListSnapshot:
        return cls(files=tuple(sorted(names)), timestamp=epoch_millis())


@dataclass(frozen=True)
class CommitCheckpoint:
    commit_hash: str
    source_url: str
    timestamp: int = 0


@dataclass(frozen=True)
class ContentHashCheckpoint:
    """Fallback fingerprint for non-GitHub URLs (a hash of the URL string)."""

    hash: str
    source_url: str
    timestamp: int = 0


Checkpoint = FileListSnapshot | CommitCheckpoint | ContentHashCheckpoint


def checkpoint_kind(checkpoint: Checkpoint) -> str:
    if isinstance(checkpoint, FileListSnapshot):
        return "file_list"
    if isinstance(checkpoint, CommitCheckpoint):
        return "commit"
    return "content_hash"


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    """Serialize to the on-disk shape (commit records keep ``commitHash/timestamp/url``)."""
    if isinstance(checkpoint, FileListSnapshot):
        return {"files": list(checkpoint.files), "timestamp": checkpoint.timestamp}
    if isinstance(checkpoint, CommitCheckpoint):
        return {
            "commitHash": checkpoint.commit_hash,
            "timestamp": checkpoint.timestamp,
            "url": checkpoint.source_url,
        }
    return {
        "contentHash": checkpoint.hash,
        "timestamp": checkpoint.timestamp,
        "url": checkpoint.source_url,
    }


def checkpoint_from_dict(data: Any) -> Checkpoint | None:
    """Parse a stored record; returns None for anything unrecognized."""
    if not isinstance(data, dict):
        return None
    timestamp = data.get("timestamp", 0)
    if not isinstance(timestamp, int | float):
        timestamp = 0
    timestamp = int(timestamp)

    if "commitHash" in data:
        commit_hash = data["commitHash"]
        if not isinstance(commit_hash, str) or not commit_hash:
            return None
        return CommitCheckpoint(
            commit_hash=commit_hash,
            source_url=str(data.get("url", "")),
            timestamp=timestamp,
        )
    if "contentHash" in data:
        content_hash = data["contentHash"]
        if not isinstance(content_hash, str) or not content_hash:
            return None
        return ContentHashCheckpoint(
            hash=content_hash,
            source_url=str(data.get("url", "")),
            timestamp=timestamp,
        )
    if "files" in data:
        files = data["files"]
        if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
            return None
        return FileListSnapshot(files=tuple(sorted(files)), timestamp=timestamp)
    return None


def validate_checkpoint_name(name: str) -> str:
    """Reject names that are unsafe to use as a file name."""
    if not _NAME_RE.match(name) or name in {".", ".."}:
        msg = f"Invalid checkpoint name: {name!r}"
        raise ValueError(msg)
    return name


@runtime_checkable
class CheckpointStore(Protocol):
    """Durable ``name -> Checkpoint`` persistence."""

    async def load(self, name: str) -> Checkpoint | None:
        """Return the stored checkpoint, or None when absent or unreadable."""
        ...

    async def save(self, name: str, checkpoint: Checkpoint) -> bool:
        """Replace the record for ``name``. Returns False (and logs) on failure."""
        ...

    async def delete(self, name: str) -> None:
        """Remove the record for ``name`` if present."""
        ...


class JsonFileCheckpointStore:
    """Stores each checkpoint as ``<directory>/<name>.json``.

    Writes go through a temporary file and ``os.replace`` so a record is
    never observed half-written.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{validate_checkpoint_name(name)}.json"

    def _read(self, path: Path) -> Checkpoint | None:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8")
        checkpoint = checkpoint_from_dict(json.loads(raw))
        if checkpoint is None:
            logger.warning("Ignoring unrecognized checkpoint record at %s", path)
        return checkpoint

    def _write(self, path: Path, data: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp"
            )
        except OSError as exc:
            msg = f"Failed to write checkpoint {path}: {exc}"
            raise CheckpointIOError(msg) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            msg = f"Failed to write checkpoint {path}: {exc}"
            raise CheckpointIOError(msg) from exc

    async def load(self, name: str) -> Checkpoint | None:
        path = self.path_for(name)
        try:
            return await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as exc:
            logger.warning("Checkpoint %s unreadable, treating as absent: %s", path, exc)
            return None

    async def save(self, name: str, checkpoint: Checkpoint) -> bool:
        path = self.path_for(name)
        try:
            await asyncio.to_thread(self._write, path, checkpoint_to_dict(checkpoint))
        except CheckpointIOError as exc:
            logger.error("%s", exc)
            return False
        logger.debug("Saved %s checkpoint for %s", checkpoint_kind(checkpoint), name)
        return True

    async def delete(self, name: str) -> None:
        path = self.path_for(name)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            logger.error("Failed to delete checkpoint %s: %s", path, exc)


class SqlCheckpointStore:
    """Stores checkpoints in the ``sync_checkpoints`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self, name: str) -> Checkpoint | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(SyncCheckpoint, name)
        except SQLAlchemyError as exc:
            logger.warning("Checkpoint %s unreadable, treating as absent: %s", name, exc)
            return None
        if row is None:
            return None
        try:
            checkpoint = checkpoint_from_dict(json.loads(row.payload))
        except ValueError as exc:
            logger.warning("Checkpoint %s is corrupt, treating as absent: %s", name, exc)
            return None
        if checkpoint is None:
            logger.warning("Ignoring unrecognized checkpoint record for %s", name)
        return checkpoint

    async def save(self, name: str, checkpoint: Checkpoint) -> bool:
        payload = json.dumps(checkpoint_to_dict(checkpoint))
        try:
            async with self._session_factory() as session:
                await session.merge(
                    SyncCheckpoint(
                        source_name=name,
                        kind=checkpoint_kind(checkpoint),
                        payload=payload,
                        updated_at=format_iso(now_utc()),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to write checkpoint %s: %s", name, exc)
            return False
        return True

    async def delete(self, name: str) -> None:
        try:
            async with self._session_factory() as session:
                row = await session.get(SyncCheckpoint, name)
                if row is not None:
                    await session.delete(row)
                    await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Failed to delete checkpoint %s: %s", name, exc)

