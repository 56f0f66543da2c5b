"""Sync checkpoint model."""

from __future__ import annotations

from sqlalchemy import Text
from sqlalchemy.orm import Mapped, mapped_column

from assetsync.models.base import Base


class SyncCheckpoint(Base):
    """Last known fingerprint of one source, keyed by task name."""

    __tablename__ = "sync_checkpoints"

    source_name: Mapped[str] = mapped_column(Text, primary_key=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
