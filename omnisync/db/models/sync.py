"""SQLAlchemy ORM models for sync sessions and import cursors."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from omnisync.db.base import Base
from omnisync.db.enums import SyncStatus
from omnisync.db.types import JSONType, utcnow


class SyncSession(Base):
    """
    One user-triggered or scheduled sync attempt.

    Mutated by every job in its batch; closed (completed/failed/cancelled)
    exactly once.
    """

    __tablename__ = "sync_sessions"
    __table_args__ = (
        Index("idx_sync_sessions_user_service", "user_id", "service", "started_at"),
        Index("idx_sync_sessions_batch", "batch_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    service: Mapped[str] = mapped_column(String(20), nullable=False)  # gmail, calendar
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncStatus.STARTED.value
    )

    progress_percentage: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    current_step: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    imported_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Moving average of seconds per processed item
    avg_item_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    remaining_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    preferences: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    started_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_update: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class ImportCursor(Base):
    """High-water mark bounding incremental fetch windows per (user, provider)."""

    __tablename__ = "import_cursors"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_import_cursors_user_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    last_synced_at: Mapped[datetime] = mapped_column(nullable=False)
    last_batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
