"""Sync pipeline baseline

Revision ID: 0001_sync_pipeline
Revises:
Create Date: 2026-10-19

Users, credentials, jobs, sync sessions, cursors, raw events,
interactions, contacts, tasks, embeddings and pending approvals.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001_sync_pipeline"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True)


def _user_fk() -> sa.Column:
    return sa.Column(
        "user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("token_version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", TS, nullable=False),
    )

    # ==========================================================================
    # Token vault
    # ==========================================================================
    op.create_table(
        "user_integrations",
        _id(),
        _user_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text()),
        sa.Column("expires_at", TS),
        sa.Column("scopes", JSON, nullable=False),
        sa.Column("account_email", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("last_error_code", sa.String(50)),
        sa.Column("last_refreshed_at", TS),
        sa.Column("refresh_locked_until", TS),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "provider", name="uq_user_integrations_user_provider"),
    )

    # ==========================================================================
    # Job store
    # ==========================================================================
    op.create_table(
        "jobs",
        _id(),
        _user_fk(),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(50), nullable=False),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("result", JSON),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("progress", sa.Integer()),
        sa.Column("run_at", TS, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("error_code", sa.String(50)),
        *_timestamps(),
        sa.Column("started_at", TS),
        sa.Column("completed_at", TS),
        sa.Column("idempotency_key", sa.String(255)),
    )
    op.create_index("idx_jobs_queued", "jobs", ["status", "run_at"])
    op.create_index("idx_jobs_batch", "jobs", ["batch_id"])
    op.create_index("idx_jobs_user", "jobs", ["user_id", "created_at"])
    op.create_index("uq_job_idempotency", "jobs", ["idempotency_key"], unique=True)

    # ==========================================================================
    # Sync sessions + cursors
    # ==========================================================================
    op.create_table(
        "sync_sessions",
        _id(),
        _user_fk(),
        sa.Column("service", sa.String(20), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("progress_percentage", sa.Float(), nullable=False),
        sa.Column("current_step", sa.String(255), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False),
        sa.Column("imported_items", sa.Integer(), nullable=False),
        sa.Column("processed_items", sa.Integer(), nullable=False),
        sa.Column("failed_items", sa.Integer(), nullable=False),
        sa.Column("avg_item_seconds", sa.Float()),
        sa.Column("remaining_seconds", sa.Integer()),
        sa.Column("preferences", JSON, nullable=False),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("error_details", JSON),
        sa.Column("started_at", TS, nullable=False),
        sa.Column("completed_at", TS),
        sa.Column("last_update", TS, nullable=False),
    )
    op.create_index(
        "idx_sync_sessions_user_service", "sync_sessions", ["user_id", "service", "started_at"]
    )
    op.create_index("idx_sync_sessions_batch", "sync_sessions", ["batch_id"])

    op.create_table(
        "import_cursors",
        _id(),
        _user_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("last_synced_at", TS, nullable=False),
        sa.Column("last_batch_id", sa.Uuid()),
        sa.Column("updated_at", TS, nullable=False),
        sa.UniqueConstraint("user_id", "provider", name="uq_import_cursors_user_provider"),
    )

    # ==========================================================================
    # Raw events + normalized interactions
    # ==========================================================================
    op.create_table(
        "raw_events",
        _id(),
        _user_fk(),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("occurred_at", TS),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "provider", "source_id", name="uq_raw_events_source"),
    )
    op.create_index("idx_raw_events_batch", "raw_events", ["batch_id"])

    op.create_table(
        "interactions",
        _id(),
        _user_fk(),
        sa.Column(
            "raw_event_id",
            sa.Uuid(),
            sa.ForeignKey("raw_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("body_text", sa.Text(), nullable=False),
        sa.Column("occurred_at", TS),
        sa.Column("participants", JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "provider", "source_id", name="uq_interactions_source"),
    )
    op.create_index("idx_interactions_batch", "interactions", ["batch_id"])

    # ==========================================================================
    # Derived entities
    # ==========================================================================
    op.create_table(
        "contacts",
        _id(),
        _user_fk(),
        sa.Column("primary_email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("approval_id", sa.Uuid()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "primary_email", name="uq_contacts_user_email"),
    )
    op.create_index("idx_contacts_approval", "contacts", ["approval_id"])

    op.create_table(
        "tasks",
        _id(),
        _user_fk(),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(10), nullable=False),
        sa.Column("due_date", sa.Date()),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column(
            "source_interaction_id",
            sa.Uuid(),
            sa.ForeignKey("interactions.id", ondelete="SET NULL"),
        ),
        sa.Column("dedup_key", sa.String(255), nullable=False),
        sa.Column("approval_id", sa.Uuid()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_tasks_user_dedup"),
    )
    op.create_index("idx_tasks_approval", "tasks", ["approval_id"])

    op.create_table(
        "embeddings",
        _id(),
        _user_fk(),
        sa.Column("owner_type", sa.String(20), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("vector", JSON, nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "owner_type", "owner_id", name="uq_embeddings_owner"),
    )

    # ==========================================================================
    # Approval gate
    # ==========================================================================
    op.create_table(
        "pending_approvals",
        _id(),
        _user_fk(),
        sa.Column(
            "inbox_item_id",
            sa.Uuid(),
            sa.ForeignKey("interactions.id", ondelete="SET NULL"),
        ),
        sa.Column("batch_id", sa.Uuid()),
        sa.Column("artifact_type", sa.String(20), nullable=False),
        sa.Column("dedup_key", sa.String(255), nullable=False),
        sa.Column("processing_result", JSON, nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("created_at", TS, nullable=False),
        sa.UniqueConstraint("user_id", "dedup_key", name="uq_pending_approvals_dedup"),
    )
    op.create_index("idx_pending_approvals_user", "pending_approvals", ["user_id", "created_at"])


def downgrade() -> None:
    for table in (
        "pending_approvals",
        "embeddings",
        "tasks",
        "contacts",
        "interactions",
        "raw_events",
        "import_cursors",
        "sync_sessions",
        "jobs",
        "user_integrations",
        "users",
    ):
        op.drop_table(table)
