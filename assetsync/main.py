"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from assetsync.api.health import router as health_router
from assetsync.api.tasks import router as tasks_router
from assetsync.config import Settings
from assetsync.database import create_engine, ensure_sqlite_directory
from assetsync.exceptions import (
    InternalServerError,
    SourceConfigError,
    SyncError,
    UnknownTaskError,
)
from assetsync.filesystem.sources_toml import ensure_sources_file
from assetsync.models.base import Base
from assetsync.services.change_detector import ChangeDetector
from assetsync.services.checkpoint_store import JsonFileCheckpointStore, SqlCheckpointStore
from assetsync.services.fetcher import Fetcher
from assetsync.services.github_client import GitHubClient
from assetsync.services.task_registry import TaskRegistry
from assetsync.services.url_resolver import UrlResolver

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from assetsync.services.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


async def _create_store(app: FastAPI, settings: Settings) -> CheckpointStore:
    if settings.checkpoint_backend == "file":
        logger.info("Using checkpoint directory %s", settings.checkpoint_dir)
        return JsonFileCheckpointStore(settings.checkpoint_dir)

    ensure_sqlite_directory(settings.database_url)
    try:
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as exc:
        logger.critical(
            "Failed to initialize checkpoint database: %s. Check database path and permissions.",
            exc,
        )
        raise
    return SqlCheckpointStore(session_factory)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting asset sync (debug=%s)", settings.debug)

    app.state.engine = None
    store = await _create_store(app, settings)

    try:
        descriptors = ensure_sources_file(settings.sources_file)
    except Exception as exc:
        logger.critical("Failed to load sources from %s: %s.", settings.sources_file, exc)
        raise

    github = GitHubClient(
        settings.github_api_url,
        user_agent=settings.user_agent,
        timeout=settings.http_timeout_seconds,
    )
    registry = TaskRegistry(
        store=store,
        detector=ChangeDetector(store, github),
        fetcher=Fetcher(github, concurrency=settings.download_concurrency),
        resolver=UrlResolver(github),
    )
    for descriptor in descriptors:
        registry.register(descriptor)
    app.state.registry = registry

    await registry.start()

    yield

    try:
        await registry.stop()
    except Exception as exc:
        logger.error("Error while stopping sync tasks: %s", exc, exc_info=True)

    try:
        await github.aclose()
    except Exception as exc:
        logger.error("Error during HTTP client shutdown: %s", exc, exc_info=True)

    if app.state.engine is not None:
        try:
            await app.state.engine.dispose()
        except Exception as exc:
            logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("Asset sync stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Asset Sync",
        description="Keeps local game assets in step with their upstream sources",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(tasks_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(UnknownTaskError)
    async def unknown_task_handler(request: Request, exc: UnknownTaskError) -> JSONResponse:
        logger.info("Unknown task in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SourceConfigError)
    async def source_config_handler(request: Request, exc: SourceConfigError) -> JSONResponse:
        logger.error("SourceConfigError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(SyncError)
    async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
        logger.error(
            "SyncError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=502,
            content={"detail": "Upstream source unavailable"},
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "assetsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
