"""Sync task request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel

if TYPE_CHECKING:
    from assetsync.services.task_registry import TaskStatus


class TaskStatusResponse(BaseModel):
    """Current status of one sync task."""

    name: str
    is_running: bool
    last_check: datetime | None = None
    next_check: datetime | None = None
    last_update: datetime | None = None
    status: str
    error: str | None = None
    stats: dict[str, int] | None = None

    @classmethod
    def from_status(cls, status: TaskStatus) -> TaskStatusResponse:
        return cls(
            name=status.name,
            is_running=status.is_running,
            last_check=status.last_check_at,
            next_check=status.next_check_at,
            last_update=status.last_update_at,
            status=status.state.value,
            error=status.last_error,
            stats=dict(status.stats) or None,
        )


class RunResponse(BaseModel):
    """Result of a forced update of one task."""

    name: str
    success: bool


class RunAllResponse(BaseModel):
    """Per-task results of a forced update of every enabled task."""

    results: dict[str, bool]


class EnabledRequest(BaseModel):
    """Request to enable or disable a task."""

    enabled: bool
