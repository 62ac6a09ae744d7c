"""Sync session tracker.

A session mirrors one batch through the pipeline and is what observers poll
or subscribe to. Status only moves forward; a terminal status is written once.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.core.errors import InvalidTransitionError
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import (
    ACTIVE_SYNC_STATUSES,
    FAILURE_MESSAGES,
    SYNC_TRANSITIONS,
    TERMINAL_SYNC_STATUSES,
    FailureReason,
    SyncService,
    SyncStatus,
)
from omnisync.db.models import SyncSession
from omnisync.db.types import utcnow

logger = logging.getLogger(__name__)

# Smoothing factor for the per-item duration moving average
EMA_ALPHA = 0.3

# Fields callers may patch through advance()
_COUNTERS = ("total_items", "imported_items", "processed_items", "failed_items")


def start(
    db: Session,
    user_id: UUID,
    service: SyncService,
    preferences: dict | None,
    batch_id: UUID,
) -> SyncSession:
    """Create a session in ``started``."""
    now = utcnow()
    session = SyncSession(
        user_id=user_id,
        service=service.value,
        batch_id=batch_id,
        status=SyncStatus.STARTED.value,
        current_step="Queued",
        preferences=preferences or {},
        started_at=now,
        last_update=now,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    logger.info(
        "Sync session started",
        extra=build_log_context(
            user_id=user_id, session_id=session.id, batch_id=batch_id, provider=service.value
        ),
    )
    return session


def get_session(db: Session, session_id: UUID, user_id: UUID | None = None) -> SyncSession | None:
    query = db.query(SyncSession).filter(SyncSession.id == session_id)
    if user_id:
        query = query.filter(SyncSession.user_id == user_id)
    return query.first()


def list_sessions(
    db: Session,
    user_id: UUID,
    service: SyncService | None = None,
    limit: int = 20,
) -> list[SyncSession]:
    """Most recent sessions first."""
    query = db.query(SyncSession).filter(SyncSession.user_id == user_id)
    if service:
        query = query.filter(SyncSession.service == service.value)
    return query.order_by(SyncSession.started_at.desc()).limit(limit).all()


def get_latest_session(db: Session, user_id: UUID, service: SyncService) -> SyncSession | None:
    sessions = list_sessions(db, user_id, service=service, limit=1)
    return sessions[0] if sessions else None


def get_active_session(db: Session, user_id: UUID, service: SyncService) -> SyncSession | None:
    """A non-terminal session for (user, service), if any."""
    return (
        db.query(SyncSession)
        .filter(
            SyncSession.user_id == user_id,
            SyncSession.service == service.value,
            SyncSession.status.in_(ACTIVE_SYNC_STATUSES),
        )
        .order_by(SyncSession.started_at.desc())
        .first()
    )


def is_terminal(session: SyncSession) -> bool:
    return SyncStatus(session.status) in TERMINAL_SYNC_STATUSES


def _check_transition(current: SyncStatus, target: SyncStatus) -> None:
    if current == target:
        return
    if target not in SYNC_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Cannot move sync session from {current.value} to {target.value}")


def _percentage(session: SyncSession) -> float:
    pct = session.processed_items / max(session.total_items, 1) * 100
    return round(min(max(pct, 0.0), 100.0), 2)


def _update_estimate(session: SyncSession, newly_processed: int, elapsed_seconds: float) -> None:
    """Fold the latest per-item duration into the moving average."""
    if newly_processed > 0 and elapsed_seconds >= 0:
        sample = elapsed_seconds / newly_processed
        if session.avg_item_seconds is None:
            session.avg_item_seconds = sample
        else:
            session.avg_item_seconds = EMA_ALPHA * sample + (1 - EMA_ALPHA) * session.avg_item_seconds

    remaining_items = max(session.total_items - session.processed_items, 0)
    if session.avg_item_seconds is None:
        session.remaining_seconds = None
    else:
        session.remaining_seconds = int(round(session.avg_item_seconds * remaining_items))


def advance(db: Session, session_id: UUID, patch: dict[str, Any]) -> SyncSession | None:
    """
    Apply a progress patch.

    ``patch`` may carry ``status``, ``current_step`` and any of the item
    counters. Counters are absolute values unless the key is prefixed with
    ``add_`` (e.g. ``add_processed_items``). Returns the session unchanged
    when it is already terminal.
    """
    session = db.get(SyncSession, session_id)
    if not session:
        return None
    db.refresh(session)
    if is_terminal(session):
        return session

    if "status" in patch and patch["status"] is not None:
        target = SyncStatus(patch["status"])
        if target in TERMINAL_SYNC_STATUSES:
            raise InvalidTransitionError("Use finish() for terminal statuses")
        _check_transition(SyncStatus(session.status), target)
        session.status = target.value

    if patch.get("current_step"):
        session.current_step = patch["current_step"]

    previous_processed = session.processed_items
    for field in _COUNTERS:
        if field in patch:
            setattr(session, field, max(int(patch[field]), 0))
        delta = patch.get(f"add_{field}")
        if delta:
            setattr(session, field, max(getattr(session, field) + int(delta), 0))

    now = utcnow()
    elapsed = (now - session.last_update).total_seconds()
    _update_estimate(session, session.processed_items - previous_processed, elapsed)
    session.progress_percentage = _percentage(session)
    session.last_update = now
    db.commit()
    db.refresh(session)
    return session


def finish(
    db: Session,
    session_id: UUID,
    outcome: SyncStatus,
    error_details: dict | None = None,
) -> SyncSession | None:
    """
    Close the session with a terminal status.

    Only the first terminal transition sticks; later calls return the session
    as-is.
    """
    if outcome not in TERMINAL_SYNC_STATUSES:
        raise InvalidTransitionError(f"{outcome.value} is not a terminal status")
    session = db.get(SyncSession, session_id)
    if not session:
        return None
    db.refresh(session)
    if is_terminal(session):
        return session

    _check_transition(SyncStatus(session.status), outcome)
    now = utcnow()
    session.status = outcome.value
    session.completed_at = now
    session.last_update = now
    session.remaining_seconds = 0 if outcome == SyncStatus.COMPLETED else None
    if outcome == SyncStatus.COMPLETED:
        session.progress_percentage = 100.0
        session.current_step = "Completed"
    elif outcome == SyncStatus.CANCELLED:
        session.current_step = "Cancelled"
    else:
        session.current_step = "Failed"
    if error_details is not None:
        session.error_details = error_details
    db.commit()
    db.refresh(session)
    logger.info(
        "Sync session %s",
        outcome.value,
        extra=build_log_context(
            user_id=session.user_id, session_id=session.id, batch_id=session.batch_id
        ),
    )
    return session


def request_cancel(db: Session, session_id: UUID, user_id: UUID) -> SyncSession | None:
    """
    Cancel a session.

    The session goes to ``cancelled`` immediately; running stage handlers see
    ``cancel_requested`` between units and stop without enqueueing the next stage.
    """
    session = get_session(db, session_id, user_id=user_id)
    if not session:
        return None
    if is_terminal(session):
        return session
    session.cancel_requested = True
    db.commit()
    return finish(db, session.id, SyncStatus.CANCELLED)


def is_cancel_requested(db: Session, session_id: UUID) -> bool:
    """Re-read the cancel flag from the database."""
    row = (
        db.query(SyncSession.cancel_requested, SyncSession.status)
        .filter(SyncSession.id == session_id)
        .first()
    )
    if row is None:
        return True
    return bool(row.cancel_requested) or row.status == SyncStatus.CANCELLED.value


def build_error_details(stage: str, reason: FailureReason, code: str, message: str) -> dict[str, str]:
    """Error details stored on a failed session."""
    return {
        "stage": stage,
        "reason": reason.value,
        "code": code,
        "message": message,
        "hint": FAILURE_MESSAGES[reason],
    }


def to_payload(session: SyncSession) -> dict[str, Any]:
    """Serialize a session to its observer-facing shape."""
    eta = None
    if session.remaining_seconds is not None and not is_terminal(session):
        eta = (utcnow() + timedelta(seconds=session.remaining_seconds)).isoformat()

    payload: dict[str, Any] = {
        "sessionId": str(session.id),
        "userId": str(session.user_id),
        "service": session.service,
        "batchId": str(session.batch_id),
        "status": session.status,
        "progress": {
            "percentage": session.progress_percentage,
            "currentStep": session.current_step,
            "totalItems": session.total_items,
            "importedItems": session.imported_items,
            "processedItems": session.processed_items,
            "failedItems": session.failed_items,
        },
        "timeEstimate": {
            "remainingSeconds": session.remaining_seconds,
            "eta": eta,
        },
        "timestamps": {
            "startedAt": session.started_at.isoformat(),
            "completedAt": session.completed_at.isoformat() if session.completed_at else None,
            "lastUpdate": session.last_update.isoformat(),
        },
        "preferences": session.preferences or {},
    }
    if session.error_details:
        payload["errorDetails"] = session.error_details
    return payload
