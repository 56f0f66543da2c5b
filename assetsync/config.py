"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = "assetsync/0.1 (+https://github.com/Nikke-db)"


class Settings(BaseSettings):
    """Asset sync service settings."""

    model_config = SettingsConfigDict(
        env_prefix="ASSETSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    admin_token: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    # Checkpoints
    checkpoint_backend: Literal["file", "database"] = "file"
    checkpoint_dir: Path = Path("./data/checkpoints")
    database_url: str = "sqlite+aiosqlite:///data/db/assetsync.db"

    # Sources
    sources_file: Path = Path("./sources.toml")

    # Remote access
    github_api_url: str = "https://api.github.com"
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    download_concurrency: int = Field(default=5, ge=1, le=32)

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if len(self.admin_token) < 24:
            violations.append(
                "ASSETSYNC_ADMIN_TOKEN must be set to a high-entropy value (>=24 chars)"
            )

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
