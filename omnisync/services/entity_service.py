"""Writes for pipeline-derived entities: contacts, tasks and embeddings."""

import hashlib
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.db.enums import EntityStatus
from omnisync.db.models import Contact, Embedding, Task
from omnisync.db.types import utcnow


# =============================================================================
# Contacts
# =============================================================================


def get_contact_by_email(db: Session, user_id: UUID, email: str) -> Contact | None:
    return (
        db.query(Contact)
        .filter(Contact.user_id == user_id, Contact.primary_email == email.strip().lower())
        .first()
    )


def create_contact(
    db: Session,
    user_id: UUID,
    email: str,
    display_name: str,
    source: str,
    confidence: float,
    status: EntityStatus = EntityStatus.ACTIVE,
    approval_id: UUID | None = None,
    commit: bool = True,
) -> Contact:
    now = utcnow()
    contact = Contact(
        user_id=user_id,
        primary_email=email.strip().lower(),
        display_name=display_name or "",
        source=source,
        confidence=confidence,
        status=status.value,
        approval_id=approval_id,
        created_at=now,
        updated_at=now,
    )
    db.add(contact)
    if commit:
        db.commit()
        db.refresh(contact)
    return contact


def list_contacts(db: Session, user_id: UUID, status: EntityStatus | None = None) -> list[Contact]:
    query = db.query(Contact).filter(Contact.user_id == user_id)
    if status:
        query = query.filter(Contact.status == status.value)
    return query.order_by(Contact.created_at).all()


# =============================================================================
# Tasks
# =============================================================================


def get_task_by_dedup_key(db: Session, user_id: UUID, dedup_key: str) -> Task | None:
    return db.query(Task).filter(Task.user_id == user_id, Task.dedup_key == dedup_key).first()


def create_task(
    db: Session,
    user_id: UUID,
    title: str,
    dedup_key: str,
    description: str = "",
    priority: str = "medium",
    status: EntityStatus = EntityStatus.PENDING_APPROVAL,
    source_interaction_id: UUID | None = None,
    approval_id: UUID | None = None,
    commit: bool = True,
) -> Task:
    now = utcnow()
    task = Task(
        user_id=user_id,
        title=title,
        description=description or "",
        priority=priority or "medium",
        status=status.value,
        source_interaction_id=source_interaction_id,
        dedup_key=dedup_key,
        approval_id=approval_id,
        created_at=now,
        updated_at=now,
    )
    db.add(task)
    if commit:
        db.commit()
        db.refresh(task)
    return task


# =============================================================================
# Embeddings
# =============================================================================


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def get_embedding(db: Session, user_id: UUID, owner_type: str, owner_id: UUID) -> Embedding | None:
    return (
        db.query(Embedding)
        .filter(
            Embedding.user_id == user_id,
            Embedding.owner_type == owner_type,
            Embedding.owner_id == owner_id,
        )
        .first()
    )


def needs_embedding(db: Session, user_id: UUID, owner_type: str, owner_id: UUID, text: str) -> bool:
    """False when the stored vector was computed from the same text."""
    existing = get_embedding(db, user_id, owner_type, owner_id)
    return existing is None or existing.content_hash != text_hash(text)


def upsert_embedding(
    db: Session,
    user_id: UUID,
    owner_type: str,
    owner_id: UUID,
    text: str,
    vector: list[float],
    model: str,
) -> Embedding:
    """Insert or replace the vector for one owner."""
    embedding = get_embedding(db, user_id, owner_type, owner_id)
    now = utcnow()
    if embedding is None:
        embedding = Embedding(
            user_id=user_id,
            owner_type=owner_type,
            owner_id=owner_id,
            created_at=now,
        )
        db.add(embedding)
    embedding.content_hash = text_hash(text)
    embedding.vector = vector
    embedding.model = model
    embedding.updated_at = now
    db.commit()
    db.refresh(embedding)
    return embedding
