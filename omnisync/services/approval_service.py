"""Approval gate for AI-derived artifacts.

Low-confidence contacts and every suggested task are created speculatively
(``pending_approval``) together with a PendingApproval row. Approving commits
the entity; rejecting discards it. The approval row is deleted either way.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.errors import ApprovalNotFoundError
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import ArtifactType, EntityStatus
from omnisync.db.models import Contact, PendingApproval, Task
from omnisync.db.types import utcnow
from omnisync.services import entity_service
from omnisync.services.suggestion_service import Suggestion

logger = logging.getLogger(__name__)

# Fields a reviewer may change while approving
CONTACT_EDIT_FIELDS = ("display_name",)
TASK_EDIT_FIELDS = ("title", "description", "priority", "due_date")


@dataclass
class GateOutcome:
    """What the gate did with one suggestion."""

    action: str  # created, pending, skipped
    entity: Contact | Task | None = None
    approval: PendingApproval | None = None


def get_approval(db: Session, user_id: uuid.UUID, approval_id: uuid.UUID) -> PendingApproval | None:
    return (
        db.query(PendingApproval)
        .filter(PendingApproval.id == approval_id, PendingApproval.user_id == user_id)
        .first()
    )


def list_pending(
    db: Session,
    user_id: uuid.UUID,
    artifact_type: ArtifactType | None = None,
    batch_id: uuid.UUID | None = None,
    limit: int = 100,
) -> list[PendingApproval]:
    """Pending approvals for a user, newest first."""
    query = db.query(PendingApproval).filter(PendingApproval.user_id == user_id)
    if artifact_type:
        query = query.filter(PendingApproval.artifact_type == artifact_type.value)
    if batch_id:
        query = query.filter(PendingApproval.batch_id == batch_id)
    return query.order_by(PendingApproval.created_at.desc()).limit(limit).all()


def _create_approval(
    db: Session,
    user_id: uuid.UUID,
    batch_id: uuid.UUID | None,
    suggestion: Suggestion,
) -> PendingApproval:
    approval = PendingApproval(
        user_id=user_id,
        inbox_item_id=suggestion.source_interaction_id,
        batch_id=batch_id,
        artifact_type=suggestion.artifact_type.value,
        dedup_key=suggestion.dedup_key,
        processing_result=suggestion.data,
        confidence=suggestion.confidence,
        created_at=utcnow(),
    )
    db.add(approval)
    db.flush()
    return approval


def _submit_contact(
    db: Session,
    user_id: uuid.UUID,
    batch_id: uuid.UUID | None,
    suggestion: Suggestion,
) -> GateOutcome:
    email = suggestion.data.get("email") or ""
    if not email or entity_service.get_contact_by_email(db, user_id, email):
        return GateOutcome(action="skipped")

    if suggestion.confidence >= settings.AUTO_ACCEPT_CONFIDENCE:
        contact = entity_service.create_contact(
            db,
            user_id,
            email=email,
            display_name=suggestion.data.get("name") or "",
            source=suggestion.data.get("source") or "",
            confidence=suggestion.confidence,
            status=EntityStatus.ACTIVE,
            commit=False,
        )
        db.commit()
        return GateOutcome(action="created", entity=contact)

    approval = _create_approval(db, user_id, batch_id, suggestion)
    contact = entity_service.create_contact(
        db,
        user_id,
        email=email,
        display_name=suggestion.data.get("name") or "",
        source=suggestion.data.get("source") or "",
        confidence=suggestion.confidence,
        status=EntityStatus.PENDING_APPROVAL,
        approval_id=approval.id,
        commit=False,
    )
    db.commit()
    return GateOutcome(action="pending", entity=contact, approval=approval)


def _submit_task(
    db: Session,
    user_id: uuid.UUID,
    batch_id: uuid.UUID | None,
    suggestion: Suggestion,
) -> GateOutcome:
    if entity_service.get_task_by_dedup_key(db, user_id, suggestion.dedup_key):
        return GateOutcome(action="skipped")

    approval = _create_approval(db, user_id, batch_id, suggestion)
    task = entity_service.create_task(
        db,
        user_id,
        title=suggestion.data.get("title") or "Follow up",
        dedup_key=suggestion.dedup_key,
        description=suggestion.data.get("description") or "",
        priority=suggestion.data.get("priority") or "medium",
        status=EntityStatus.PENDING_APPROVAL,
        source_interaction_id=suggestion.source_interaction_id,
        approval_id=approval.id,
        commit=False,
    )
    db.commit()
    return GateOutcome(action="pending", entity=task, approval=approval)


def submit_suggestion(
    db: Session,
    user_id: uuid.UUID,
    batch_id: uuid.UUID | None,
    suggestion: Suggestion,
) -> GateOutcome:
    """
    Route one suggestion through the gate.

    Contacts at or above ``AUTO_ACCEPT_CONFIDENCE`` are committed directly;
    other contacts and all tasks wait for review. Suggestions whose dedup key
    is already pending, or whose entity already exists, are skipped.
    """
    existing = (
        db.query(PendingApproval.id)
        .filter(
            PendingApproval.user_id == user_id,
            PendingApproval.dedup_key == suggestion.dedup_key,
        )
        .first()
    )
    if existing:
        return GateOutcome(action="skipped")

    try:
        if suggestion.artifact_type == ArtifactType.CONTACT:
            return _submit_contact(db, user_id, batch_id, suggestion)
        return _submit_task(db, user_id, batch_id, suggestion)
    except IntegrityError:
        # Same entity written by a concurrent batch
        db.rollback()
        return GateOutcome(action="skipped")


def _apply_edits(entity: Contact | Task, edits: dict[str, Any], allowed: tuple[str, ...]) -> None:
    for key in allowed:
        value = edits.get(key, edits.get(to_camel(key)))
        if value is None:
            continue
        if key == "due_date" and isinstance(value, str):
            value = date.fromisoformat(value)
        setattr(entity, key, value)


def _associated_entities(db: Session, approval: PendingApproval) -> list[Contact | Task]:
    contacts = db.query(Contact).filter(Contact.approval_id == approval.id).all()
    tasks = db.query(Task).filter(Task.approval_id == approval.id).all()
    return [*contacts, *tasks]


def approve(
    db: Session,
    user_id: uuid.UUID,
    approval_id: uuid.UUID,
    edits: dict[str, Any] | None = None,
) -> Contact | Task:
    """
    Commit the entity behind an approval.

    Raises:
        ApprovalNotFoundError: unknown or already resolved approval
    """
    approval = get_approval(db, user_id, approval_id)
    if not approval:
        raise ApprovalNotFoundError(str(approval_id))

    artifact_type = approval.artifact_type
    batch_id = approval.batch_id
    edits = edits or {}
    result = approval.processing_result or {}
    now = utcnow()
    entities = _associated_entities(db, approval)

    if artifact_type == ArtifactType.CONTACT.value:
        contact = next((e for e in entities if isinstance(e, Contact)), None)
        if contact is None and result.get("email"):
            contact = entity_service.get_contact_by_email(db, user_id, result["email"])
        if contact is None:
            contact = entity_service.create_contact(
                db,
                user_id,
                email=result.get("email") or "",
                display_name=result.get("name") or "",
                source=result.get("source") or "",
                confidence=approval.confidence,
                commit=False,
            )
        _apply_edits(contact, edits, CONTACT_EDIT_FIELDS)
        entity: Contact | Task = contact
    else:
        task = next((e for e in entities if isinstance(e, Task)), None)
        if task is None:
            task = entity_service.get_task_by_dedup_key(db, user_id, approval.dedup_key)
        if task is None:
            task = entity_service.create_task(
                db,
                user_id,
                title=result.get("title") or "Follow up",
                dedup_key=approval.dedup_key,
                description=result.get("description") or "",
                priority=result.get("priority") or "medium",
                source_interaction_id=approval.inbox_item_id,
                commit=False,
            )
        _apply_edits(task, edits, TASK_EDIT_FIELDS)
        entity = task

    entity.status = EntityStatus.ACTIVE.value
    entity.approval_id = None
    entity.updated_at = now
    db.delete(approval)
    db.commit()
    db.refresh(entity)
    logger.info(
        "Approval %s approved (%s)",
        approval_id,
        artifact_type,
        extra=build_log_context(user_id=user_id, batch_id=batch_id),
    )
    return entity


def reject(
    db: Session,
    user_id: uuid.UUID,
    approval_id: uuid.UUID,
    delete_associated: bool,
    reason: str | None = None,
) -> dict[str, Any]:
    """
    Discard an approval.

    With ``delete_associated`` the speculative entities are deleted; without
    it they are kept as ``dismissed`` and detached from the approval.

    Raises:
        ApprovalNotFoundError: unknown or already resolved approval
    """
    approval = get_approval(db, user_id, approval_id)
    if not approval:
        raise ApprovalNotFoundError(str(approval_id))

    batch_id = approval.batch_id
    entities = _associated_entities(db, approval)
    now = utcnow()
    for entity in entities:
        if delete_associated:
            db.delete(entity)
        else:
            entity.status = EntityStatus.DISMISSED.value
            entity.approval_id = None
            entity.updated_at = now
    db.delete(approval)
    db.commit()

    logger.info(
        "Approval %s rejected deleted=%s reason=%s",
        approval_id,
        delete_associated,
        reason or "",
        extra=build_log_context(user_id=user_id, batch_id=batch_id),
    )
    return {
        "approvalId": str(approval_id),
        "deletedEntities": len(entities) if delete_associated else 0,
        "detachedEntities": 0 if delete_associated else len(entities),
    }
