"""Pydantic schemas for the approval gate."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from omnisync.schemas.common import CamelModel


class ApprovalRead(CamelModel):
    id: UUID
    artifact_type: str
    confidence: float
    processing_result: dict[str, Any]
    inbox_item_id: UUID | None = None
    batch_id: UUID | None = None
    created_at: datetime


class ApproveRequest(CamelModel):
    edits: dict[str, Any] | None = None


class RejectRequest(CamelModel):
    delete_associated: bool = False
    reason: str | None = Field(default=None, max_length=500)


class RejectResponse(CamelModel):
    approval_id: str
    deleted_entities: int
    detached_entities: int


class ContactRead(CamelModel):
    id: UUID
    primary_email: str
    display_name: str
    source: str
    confidence: float
    status: str


class TaskRead(CamelModel):
    id: UUID
    title: str
    description: str
    priority: str
    due_date: date | None = None
    status: str
    source_interaction_id: UUID | None = None


class ApproveResponse(CamelModel):
    artifact_type: str
    contact: ContactRead | None = None
    task: TaskRead | None = None
