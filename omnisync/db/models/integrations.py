"""SQLAlchemy ORM models for provider credentials."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from omnisync.db.base import Base
from omnisync.db.enums import CredentialStatus
from omnisync.db.types import JSONType, utcnow


class Credential(Base):
    """
    Per-user, per-provider OAuth credential.

    Tokens are Fernet-encrypted. One row per (user, provider); mutated on
    connect and on every refresh.
    """

    __tablename__ = "user_integrations"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_integrations_user_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)  # mail, calendar

    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    scopes: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CredentialStatus.CONNECTED.value
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_refreshed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Claim-and-check guard so only one runner refreshes at a time
    refresh_locked_until: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def is_connected(self) -> bool:
        return self.status == CredentialStatus.CONNECTED.value
