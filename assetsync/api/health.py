"""Health check endpoint."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from assetsync.api.deps import get_registry
from assetsync.services.task_registry import TaskRegistry, TaskState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    tasks: int
    running: bool


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    registry: Annotated[TaskRegistry, Depends(get_registry)],
) -> HealthResponse:
    """Health check endpoint for monitoring and load balancers."""
    statuses = registry.all_statuses()
    failing = [s.name for s in statuses if s.state is TaskState.ERROR]
    if failing:
        logger.warning("Health check: failing tasks %s", ", ".join(failing))
    return HealthResponse(
        status="degraded" if failing else "ok",
        version="0.1.0",
        tasks=len(statuses),
        running=registry.is_running(),
    )
