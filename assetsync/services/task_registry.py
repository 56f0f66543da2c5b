"""Task registry and scheduler.

Each registered source gets a slot holding its status, a per-task lock and
an optional timer. The lifecycle of a slot is:

    Disabled --enable--> Armed --timer fires--> Running --done--> Armed
    Armed/Running --disable--> Disabled

A timer is an ``asyncio.Task`` looping ``sleep(interval)`` then one run, so
a run always finishes before the next wait starts. Out-of-band runs
(``force_update``) take the same lock, so runs of one task never overlap.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from assetsync.exceptions import SourceConfigError, UnknownTaskError
from assetsync.services.checkpoint_store import validate_checkpoint_name
from assetsync.services.datetime_service import now_utc
from assetsync.services.sources import (
    DynamicUrlLocator,
    MultiUrlLocator,
    SourceKind,
    StaticUrlLocator,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from assetsync.services.change_detector import ChangeDecision, ChangeDetector
    from assetsync.services.checkpoint_store import CheckpointStore
    from assetsync.services.fetcher import Fetcher
    from assetsync.services.sources import SourceDescriptor
    from assetsync.services.url_resolver import UrlResolver

logger = logging.getLogger(__name__)


class TaskState(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"
    DISABLED = "disabled"


class TaskPhase(StrEnum):
    DISABLED = "disabled"
    ARMED = "armed"
    RUNNING = "running"


@dataclass
class TaskStatus:
    """In-memory view of one task, reset on restart."""

    name: str
    is_running: bool = False
    last_check_at: datetime | None = None
    next_check_at: datetime | None = None
    last_update_at: datetime | None = None
    state: TaskState = TaskState.DISABLED
    last_error: str | None = None
    stats: dict[str, int] = field(default_factory=dict)


@dataclass
class TaskOutcome:
    success: bool
    stats: dict[str, int] = field(default_factory=dict)
    error: str | None = None


@dataclass
class _TaskSlot:
    descriptor: SourceDescriptor
    status: TaskStatus
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: asyncio.Task[None] | None = None

    @property
    def phase(self) -> TaskPhase:
        if self.lock.locked():
            return TaskPhase.RUNNING
        if self.timer is not None and not self.timer.done():
            return TaskPhase.ARMED
        return TaskPhase.DISABLED


def _overlaps(a: Path, b: Path) -> bool:
    a, b = a.resolve(), b.resolve()
    return a == b or a in b.parents or b in a.parents


class TaskRegistry:
    """Owns every sync task: registration, timers, runs and status."""

    def __init__(
        self,
        store: CheckpointStore,
        detector: ChangeDetector,
        fetcher: Fetcher,
        resolver: UrlResolver,
    ) -> None:
        self.store = store
        self.detector = detector
        self.fetcher = fetcher
        self.resolver = resolver
        self._slots: dict[str, _TaskSlot] = {}
        self._strategies: dict[
            SourceKind, Callable[[SourceDescriptor], Awaitable[TaskOutcome]]
        ] = {
            SourceKind.DIRECTORY_MIRROR: self._run_directory_mirror,
            SourceKind.SINGLE_JSON_DYNAMIC: self._run_single_json,
            SourceKind.SINGLE_JSON_STATIC: self._run_single_json,
            SourceKind.MULTI_URL_WATCH: self._run_multi_url_watch,
        }

    def register(self, descriptor: SourceDescriptor) -> None:
        """Add a task. It stays disabled until ``start`` or ``set_enabled``.

        Raises SourceConfigError for an unsafe or duplicate name, or when any
        of the task's output paths overlaps one of an existing task.
        """
        try:
            validate_checkpoint_name(descriptor.name)
        except ValueError as exc:
            raise SourceConfigError(str(exc)) from exc
        if descriptor.name in self._slots:
            msg = f"Task {descriptor.name!r} is already registered"
            raise SourceConfigError(msg)
        for other in self._slots.values():
            for mine in descriptor.output_paths():
                for theirs in other.descriptor.output_paths():
                    if _overlaps(mine, theirs):
                        msg = (
                            f"Task {descriptor.name!r} writes to {mine}, which overlaps "
                            f"{theirs} of task {other.descriptor.name!r}"
                        )
                        raise SourceConfigError(msg)
        self._slots[descriptor.name] = _TaskSlot(
            descriptor=descriptor, status=TaskStatus(name=descriptor.name)
        )
        logger.info("Registered %s task %s", descriptor.kind.value, descriptor.name)

    async def remove(self, name: str) -> None:
        """Disarm and forget a task, deleting its checkpoint."""
        slot = self._slots.pop(name, None)
        if slot is None:
            raise UnknownTaskError(name)
        await self._disarm(slot)
        await self.store.delete(name)
        logger.info("Removed task %s", name)

    def _slot(self, name: str) -> _TaskSlot:
        slot = self._slots.get(name)
        if slot is None:
            raise UnknownTaskError(name)
        return slot

    async def start(self) -> None:
        """Run every enabled task once, concurrently, then arm its timer."""
        slots = [s for s in self._slots.values() if s.descriptor.enabled]
        logger.info("Starting %d sync task(s)", len(slots))
        for slot in slots:
            slot.status.state = TaskState.PENDING
        await asyncio.gather(*(self._execute(slot) for slot in slots))
        for slot in slots:
            if slot.descriptor.enabled:
                self._arm(slot)

    async def stop(self) -> None:
        """Cancel every timer. Statuses and checkpoints are kept."""
        await asyncio.gather(*(self._disarm(slot) for slot in self._slots.values()))
        logger.info("All sync tasks stopped")

    def _arm(self, slot: _TaskSlot) -> None:
        if slot.timer is not None:
            slot.timer.cancel()
        slot.timer = asyncio.create_task(
            self._timer_loop(slot), name=f"sync-{slot.descriptor.name}"
        )
        slot.status.is_running = True
        interval = timedelta(seconds=slot.descriptor.interval_seconds)
        slot.status.next_check_at = now_utc() + interval

    async def _disarm(self, slot: _TaskSlot) -> None:
        timer, slot.timer = slot.timer, None
        slot.status.is_running = False
        slot.status.next_check_at = None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)

    async def _timer_loop(self, slot: _TaskSlot) -> None:
        interval = slot.descriptor.interval_seconds
        while True:
            slot.status.next_check_at = now_utc() + timedelta(seconds=interval)
            await asyncio.sleep(interval)
            await self._execute(slot)

    async def _execute(self, slot: _TaskSlot) -> bool:
        descriptor = slot.descriptor
        status = slot.status
        async with slot.lock:
            status.last_check_at = now_utc()
            status.state = TaskState.PENDING
            try:
                outcome = await self._strategies[descriptor.kind](descriptor)
            except asyncio.CancelledError:
                status.state = TaskState.ERROR
                status.last_error = "Run cancelled"
                raise
            except Exception as exc:
                logger.error("Task %s failed: %s", descriptor.name, exc)
                status.state = TaskState.ERROR
                status.last_error = str(exc) or type(exc).__name__
                success = False
            else:
                if outcome.stats:
                    status.stats = outcome.stats
                success = outcome.success
                if success:
                    status.state = TaskState.SUCCESS
                    status.last_update_at = now_utc()
                    status.last_error = None
                else:
                    logger.warning(
                        "Task %s finished with errors: %s", descriptor.name, outcome.error
                    )
                    status.state = TaskState.ERROR
                    status.last_error = outcome.error or "Update failed"
            # Disabled mid-run: only set_enabled may leave DISABLED.
            if not descriptor.enabled:
                status.state = TaskState.DISABLED
            return success

    async def force_update(self, name: str) -> bool:
        """Run one task now, outside its schedule. The timer is not touched."""
        slot = self._slots.get(name)
        if slot is None:
            logger.warning("Cannot force update unknown task %s", name)
            return False
        if not slot.descriptor.enabled:
            logger.warning("Cannot force update disabled task %s", name)
            return False
        logger.info("Forcing update of %s", name)
        return await self._execute(slot)

    async def force_update_all(self) -> dict[str, bool]:
        """Run every enabled task concurrently; one failure never affects another."""
        slots = [s for s in self._slots.values() if s.descriptor.enabled]
        logger.info("Forcing update of %d task(s)", len(slots))
        results = await asyncio.gather(
            *(self._execute(slot) for slot in slots), return_exceptions=True
        )
        outcome: dict[str, bool] = {}
        for slot, result in zip(slots, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Task %s raised during forced update: %s", slot.descriptor.name, result
                )
            outcome[slot.descriptor.name] = result is True
        return outcome

    async def set_enabled(self, name: str, enabled: bool) -> TaskStatus:
        """Enable (run once, then arm) or disable (disarm) a task."""
        slot = self._slot(name)
        slot.descriptor.enabled = enabled
        if not enabled:
            await self._disarm(slot)
            slot.status.state = TaskState.DISABLED
            logger.info("Disabled task %s", name)
            return slot.status
        if slot.timer is None:
            logger.info("Enabling task %s", name)
            slot.status.state = TaskState.PENDING
            await self._execute(slot)
            if slot.descriptor.enabled:
                self._arm(slot)
        return slot.status

    def get_status(self, name: str) -> TaskStatus | None:
        slot = self._slots.get(name)
        return slot.status if slot is not None else None

    def all_statuses(self) -> list[TaskStatus]:
        return [slot.status for slot in self._slots.values()]

    def get_descriptor(self, name: str) -> SourceDescriptor:
        return self._slot(name).descriptor

    def phase(self, name: str) -> TaskPhase:
        return self._slot(name).phase

    def is_running(self) -> bool:
        """True while at least one timer is armed."""
        return any(slot.timer is not None for slot in self._slots.values())

    async def _run_directory_mirror(self, descriptor: SourceDescriptor) -> TaskOutcome:
        files = await self.fetcher.fetch_directory_files(descriptor)
        stats = await self.fetcher.directory_stats(descriptor, files)
        if not files:
            logger.info("No remote files listed for %s, keeping checkpoint", descriptor.name)
            return TaskOutcome(success=True, stats=stats)

        decision = await self.detector.check_directory(descriptor, [f.name for f in files])
        if not decision.changed and stats.get("missing_files", 0) > 0:
            decision = replace(
                decision,
                changed=True,
                reason=f"{stats['missing_files']} file(s) missing locally",
            )
        if not decision.changed:
            logger.info("%s is up to date (%s)", descriptor.name, decision.reason)
            return TaskOutcome(success=True, stats={**stats, "downloaded": 0, "failed": 0})

        logger.info("Updating %s: %s", descriptor.name, decision.reason)
        result = await self.fetcher.mirror_directory(descriptor, files)
        stats = await self.fetcher.directory_stats(descriptor, files)
        stats.update(downloaded=len(result.downloaded), failed=len(result.failed))
        if not result.success:
            return TaskOutcome(
                success=False,
                stats=stats,
                error=f"{len(result.failed)} of {len(files)} file(s) failed to download",
            )
        if decision.checkpoint is not None:
            await self.store.save(descriptor.name, decision.checkpoint)
        return TaskOutcome(success=True, stats=stats)

    async def _run_single_json(self, descriptor: SourceDescriptor) -> TaskOutcome:
        locator = descriptor.remote_locator
        if isinstance(locator, DynamicUrlLocator):
            url = await self.resolver.resolve(locator, validate=descriptor.validate_urls)
            if url != locator.resolved_url:
                if locator.resolved_url is not None:
                    logger.info(
                        "Resolved URL for %s changed: %s -> %s",
                        descriptor.name,
                        locator.resolved_url,
                        url,
                    )
                descriptor.remote_locator = replace(locator, resolved_url=url)
        elif isinstance(locator, StaticUrlLocator):
            url = locator.url
        else:
            msg = f"Source {descriptor.name!r} is not a single JSON source"
            raise TypeError(msg)
        if descriptor.local_target is None:
            msg = f"Source {descriptor.name!r} has no local target"
            raise TypeError(msg)

        decision: ChangeDecision | None = None
        if descriptor.commit_tracking:
            decision = await self.detector.check_url(descriptor, url)
            if not decision.changed:
                logger.info("%s is up to date (%s)", descriptor.name, decision.reason)
                return TaskOutcome(success=True, stats={"downloaded": 0})
            logger.info("Updating %s: %s", descriptor.name, decision.reason)

        if not await self.fetcher.fetch_and_persist(url, descriptor.local_target):
            return TaskOutcome(
                success=False, stats={"downloaded": 0}, error=f"Download of {url} failed"
            )
        if decision is not None and decision.checkpoint is not None:
            await self.store.save(descriptor.name, decision.checkpoint)
        return TaskOutcome(success=True, stats={"downloaded": 1})

    async def _run_multi_url_watch(self, descriptor: SourceDescriptor) -> TaskOutcome:
        locator = descriptor.remote_locator
        if not isinstance(locator, MultiUrlLocator):
            msg = f"Source {descriptor.name!r} is not a multi URL watch"
            raise TypeError(msg)
        urls = await self.resolver.resolve_many(
            locator.watched_file_url, locator.patterns, validate=descriptor.validate_urls
        )
        for label, url in urls.items():
            previous = locator.resolved_urls.get(label)
            if previous is not None and previous != url:
                logger.info("URL %s of %s changed: %s -> %s", label, descriptor.name, previous, url)
        descriptor.remote_locator = replace(locator, resolved_urls=urls)

        decision = await self.detector.check_url_set(descriptor, urls)
        if not decision.changed:
            logger.info("%s is up to date (%s)", descriptor.name, decision.reason)
            return TaskOutcome(success=True, stats={"downloaded": 0, "failed": 0})

        logger.info("Updating %s: %s", descriptor.name, decision.reason)
        labels = sorted(urls)
        results = await asyncio.gather(
            *(
                self.fetcher.fetch_and_persist(urls[label], locator.targets[label])
                for label in labels
            )
        )
        failed = [label for label, ok in zip(labels, results, strict=True) if not ok]
        stats = {"downloaded": len(labels) - len(failed), "failed": len(failed)}
        if failed:
            return TaskOutcome(
                success=False, stats=stats, error=f"Failed to download: {', '.join(failed)}"
            )
        if decision.checkpoint is not None:
            await self.store.save(descriptor.name, decision.checkpoint)
        return TaskOutcome(success=True, stats=stats)
