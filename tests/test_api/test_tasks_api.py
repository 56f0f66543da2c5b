"""API tests for sync task status and admin endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from httpx import ASGITransport, AsyncClient

from assetsync.config import Settings
from assetsync.main import create_app, lifespan
from assetsync.services.sources import SourceDescriptor, SourceKind, StaticUrlLocator
from assetsync.services.task_registry import TaskRegistry

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI

    from tests.conftest import FakeUpstream

ADMIN_TOKEN = "test-admin-token-with-enough-entropy"
AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}
GOOD_URL = "https://cdn.example.com/good.json"
BAD_URL = "https://cdn.example.com/bad.json"


def _static(tmp_path: Path, name: str, url: str, enabled: bool = True) -> SourceDescriptor:
    return SourceDescriptor(
        name=name,
        kind=SourceKind.SINGLE_JSON_STATIC,
        remote_locator=StaticUrlLocator(url=url),
        local_target=tmp_path / "out" / f"{name}.json",
        interval_seconds=3600,
        enabled=enabled,
        commit_tracking=False,
    )


@pytest.fixture
def app_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        debug=False,
        admin_token=ADMIN_TOKEN,
        checkpoint_dir=tmp_path / "checkpoints",
        sources_file=tmp_path / "sources.toml",
    )


@pytest.fixture
async def app(
    app_settings: Settings,
    registry: TaskRegistry,
    upstream: FakeUpstream,
    tmp_path: Path,
) -> FastAPI:
    """App wired to a registry over the fake upstream.

    ASGITransport does not run the lifespan, so state is set up by hand.
    """
    upstream.add_json(GOOD_URL, {"ok": True})
    registry.register(_static(tmp_path, "good", GOOD_URL))
    registry.register(_static(tmp_path, "bad", BAD_URL))
    registry.register(_static(tmp_path, "off", GOOD_URL.replace("good", "off"), enabled=False))
    application = create_app(app_settings)
    application.state.registry = registry
    return application


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestStatusEndpoints:
    @pytest.mark.asyncio
    async def test_list_tasks_is_public(self, client: AsyncClient) -> None:
        resp = await client.get("/api/sync/tasks")
        assert resp.status_code == 200
        body = resp.json()
        assert [t["name"] for t in body] == ["good", "bad", "off"]
        assert all(t["status"] == "disabled" for t in body)
        assert body[0]["is_running"] is False
        assert body[0]["stats"] is None

    @pytest.mark.asyncio
    async def test_get_task(self, client: AsyncClient) -> None:
        resp = await client.get("/api/sync/tasks/good")
        assert resp.status_code == 200
        assert resp.json()["name"] == "good"

    @pytest.mark.asyncio
    async def test_unknown_task_is_404(self, client: AsyncClient) -> None:
        resp = await client.get("/api/sync/tasks/nope")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Unknown task: 'nope'"

    @pytest.mark.asyncio
    async def test_health_reports_degraded_after_failure(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "version": "0.1.0", "tasks": 3, "running": False}

        await client.post("/api/sync/tasks/bad/run", headers=AUTH)
        resp = await client.get("/api/health")
        assert resp.json()["status"] == "degraded"


class TestAdminAuth:
    @pytest.mark.asyncio
    async def test_missing_token_is_401(self, client: AsyncClient) -> None:
        resp = await client.post("/api/sync/run")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_wrong_token_is_403(self, client: AsyncClient, upstream: FakeUpstream) -> None:
        resp = await client.post(
            "/api/sync/tasks/good/run", headers={"Authorization": "Bearer wrong"}
        )
        assert resp.status_code == 403
        assert upstream.requests == []

    @pytest.mark.asyncio
    async def test_enable_requires_token(self, client: AsyncClient) -> None:
        resp = await client.put("/api/sync/tasks/off/enabled", json={"enabled": True})
        assert resp.status_code == 401


class TestRunEndpoints:
    @pytest.mark.asyncio
    async def test_run_one(self, client: AsyncClient, tmp_path: Path) -> None:
        resp = await client.post("/api/sync/tasks/good/run", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"name": "good", "success": True}
        assert (tmp_path / "out" / "good.json").exists()

        status = (await client.get("/api/sync/tasks/good")).json()
        assert status["status"] == "success"
        assert status["stats"] == {"downloaded": 1}
        assert status["last_check"] is not None
        assert status["last_update"] is not None

    @pytest.mark.asyncio
    async def test_run_failing_task(self, client: AsyncClient) -> None:
        resp = await client.post("/api/sync/tasks/bad/run", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"name": "bad", "success": False}
        status = (await client.get("/api/sync/tasks/bad")).json()
        assert status["status"] == "error"
        assert status["error"] == f"Download of {BAD_URL} failed"

    @pytest.mark.asyncio
    async def test_run_unknown_is_404(self, client: AsyncClient) -> None:
        resp = await client.post("/api/sync/tasks/nope/run", headers=AUTH)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_run_all_skips_disabled(self, client: AsyncClient) -> None:
        resp = await client.post("/api/sync/run", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json() == {"results": {"good": True, "bad": False}}


class TestEnabledEndpoint:
    @pytest.mark.asyncio
    async def test_enable_runs_and_arms(
        self, client: AsyncClient, upstream: FakeUpstream, tmp_path: Path
    ) -> None:
        off_url = GOOD_URL.replace("good", "off")
        upstream.add_json(off_url, {"off": False})
        resp = await client.put(
            "/api/sync/tasks/off/enabled", json={"enabled": True}, headers=AUTH
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["is_running"] is True
        assert body["next_check"] is not None
        assert (tmp_path / "out" / "off.json").exists()

        resp = await client.put(
            "/api/sync/tasks/off/enabled", json={"enabled": False}, headers=AUTH
        )
        body = resp.json()
        assert body["status"] == "disabled"
        assert body["is_running"] is False
        assert body["next_check"] is None

    @pytest.mark.asyncio
    async def test_unknown_task_is_404(self, client: AsyncClient) -> None:
        resp = await client.put(
            "/api/sync/tasks/nope/enabled", json={"enabled": True}, headers=AUTH
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_body_is_validated(self, client: AsyncClient) -> None:
        resp = await client.put("/api/sync/tasks/off/enabled", json={}, headers=AUTH)
        assert resp.status_code == 422
        assert resp.json()["detail"][0]["field"] == "enabled"


class TestLifespan:
    @pytest.mark.asyncio
    async def test_database_backend_startup_and_shutdown(self, tmp_path: Path) -> None:
        sources = tmp_path / "sources.toml"
        sources.write_text("sources = []\n", encoding="utf-8")
        db_path = tmp_path / "db" / "checkpoints.db"
        settings = Settings(
            _env_file=None,
            debug=True,
            checkpoint_backend="database",
            database_url=f"sqlite+aiosqlite:///{db_path}",
            sources_file=sources,
        )
        application = create_app(settings)

        async with lifespan(application):
            assert isinstance(application.state.registry, TaskRegistry)
            assert application.state.engine is not None
            assert application.state.registry.all_statuses() == []
        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_insecure_production_config_refuses_to_start(self, tmp_path: Path) -> None:
        application = create_app(
            Settings(_env_file=None, debug=False, sources_file=tmp_path / "sources.toml")
        )
        with pytest.raises(ValueError, match="Insecure production configuration"):
            async with lifespan(application):
                pass
