"""SQLAlchemy ORM models for the asset sync service."""

from assetsync.models.base import Base
from assetsync.models.checkpoint import SyncCheckpoint

__all__ = [
    "Base",
    "SyncCheckpoint",
]
