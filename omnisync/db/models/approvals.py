"""SQLAlchemy ORM models for the approval gate."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Float, ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from omnisync.db.base import Base
from omnisync.db.types import JSONType, utcnow


class PendingApproval(Base):
    """
    AI-derived artifact waiting for human review.

    Destroyed on approve (entity committed) or reject (entity discarded).
    ``dedup_key`` keeps pipeline re-runs from queueing the same suggestion twice.
    """

    __tablename__ = "pending_approvals"
    __table_args__ = (
        UniqueConstraint("user_id", "dedup_key", name="uq_pending_approvals_dedup"),
        Index("idx_pending_approvals_user", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    inbox_item_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("interactions.id", ondelete="SET NULL"), nullable=True
    )
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    artifact_type: Mapped[str] = mapped_column(String(20), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    processing_result: Mapped[dict] = mapped_column(JSONType, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
