"""Sync task endpoints: status, forced updates, enable/disable."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from assetsync.api.deps import get_registry, require_admin
from assetsync.exceptions import UnknownTaskError
from assetsync.schemas.task import (
    EnabledRequest,
    RunAllResponse,
    RunResponse,
    TaskStatusResponse,
)
from assetsync.services.task_registry import TaskRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/tasks", response_model=list[TaskStatusResponse])
async def list_tasks(
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> list[TaskStatusResponse]:
    """Status of every registered task."""
    return [TaskStatusResponse.from_status(s) for s in registry.all_statuses()]


@router.get("/tasks/{name}", response_model=TaskStatusResponse)
async def get_task(
    name: str,
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> TaskStatusResponse:
    status = registry.get_status(name)
    if status is None:
        raise UnknownTaskError(name)
    return TaskStatusResponse.from_status(status)


@router.post(
    "/tasks/{name}/run",
    response_model=RunResponse,
    dependencies=[Depends(require_admin)],
)
async def run_task(
    name: str,
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> RunResponse:
    """Force an immediate update of one task."""
    if registry.get_status(name) is None:
        raise UnknownTaskError(name)
    success = await registry.force_update(name)
    return RunResponse(name=name, success=success)


@router.post("/run", response_model=RunAllResponse, dependencies=[Depends(require_admin)])
async def run_all(
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> RunAllResponse:
    """Force an immediate update of every enabled task."""
    results = await registry.force_update_all()
    failed = sorted(name for name, ok in results.items() if not ok)
    if failed:
        logger.warning("Forced update finished with failures: %s", ", ".join(failed))
    return RunAllResponse(results=results)


@router.put(
    "/tasks/{name}/enabled",
    response_model=TaskStatusResponse,
    dependencies=[Depends(require_admin)],
)
async def set_task_enabled(
    name: str,
    body: EnabledRequest,
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> TaskStatusResponse:
    """Enable or disable a task. Enabling runs it once before arming its timer."""
    status = await registry.set_enabled(name, body.enabled)
    return TaskStatusResponse.from_status(status)
