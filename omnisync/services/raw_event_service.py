"""Raw event store: idempotent upsert of fetched provider records."""

import hashlib
import json
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.db.enums import Provider
from omnisync.db.models import RawEvent
from omnisync.db.types import utcnow
from omnisync.services.google_client import RawRecord


@dataclass
class UpsertCounts:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    @property
    def imported(self) -> int:
        """Records that are new or changed in this batch."""
        return self.inserted + self.updated


def content_hash(payload: dict) -> str:
    """Stable hash of a provider payload."""
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode()).hexdigest()


def upsert_raw_event(
    db: Session,
    user_id: UUID,
    provider: Provider,
    batch_id: UUID,
    record: RawRecord,
) -> str:
    """
    Insert or update one record keyed on (user, provider, source_id).

    Returns ``inserted``, ``updated`` or ``skipped``. Unchanged records keep
    their original batch so downstream stages do not reprocess them.
    """
    digest = content_hash(record.payload)
    existing = (
        db.query(RawEvent)
        .filter(
            RawEvent.user_id == user_id,
            RawEvent.provider == provider.value,
            RawEvent.source_id == record.source_id,
        )
        .first()
    )
    now = utcnow()
    if existing:
        if existing.content_hash == digest:
            return "skipped"
        existing.payload = record.payload
        existing.content_hash = digest
        existing.occurred_at = record.occurred_at
        existing.batch_id = batch_id
        existing.updated_at = now
        db.commit()
        return "updated"

    db.add(
        RawEvent(
            user_id=user_id,
            provider=provider.value,
            source_id=record.source_id,
            batch_id=batch_id,
            occurred_at=record.occurred_at,
            payload=record.payload,
            content_hash=digest,
            created_at=now,
            updated_at=now,
        )
    )
    db.commit()
    return "inserted"


def upsert_raw_events(
    db: Session,
    user_id: UUID,
    provider: Provider,
    batch_id: UUID,
    records: list[RawRecord],
) -> UpsertCounts:
    """Upsert many records and tally the outcome."""
    counts = UpsertCounts()
    for record in records:
        outcome = upsert_raw_event(db, user_id, provider, batch_id, record)
        setattr(counts, outcome, getattr(counts, outcome) + 1)
    return counts


def list_batch_events(db: Session, user_id: UUID, batch_id: UUID) -> list[RawEvent]:
    """Raw events (re)imported by one batch."""
    return (
        db.query(RawEvent)
        .filter(RawEvent.user_id == user_id, RawEvent.batch_id == batch_id)
        .order_by(RawEvent.occurred_at, RawEvent.created_at)
        .all()
    )
