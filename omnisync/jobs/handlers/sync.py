"""Sync pipeline stage handlers.

Stages run in order ``fetch -> normalize -> extract_entities -> embed``.
Each stage loads the batch's session, checks for cancellation between
units of work, advances the session and enqueues the next stage with the
same batch id. Every write is an upsert on provider ids, so a retried stage
does not duplicate anything.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from omnisync.core import events
from omnisync.core.errors import FatalSyncError, PayloadError, SyncCancelled
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import SERVICE_PROVIDER, ArtifactType, EntityStatus, JobKind, SyncService, SyncStatus
from omnisync.db.models import Contact, SyncSession, User
from omnisync.services import (
    ai_provider,
    approval_service,
    entity_service,
    fetch_service,
    google_client,
    job_service,
    normalize_service,
    oauth_service,
    raw_event_service,
    suggestion_service,
    sync_service,
    sync_session_service,
)

logger = logging.getLogger(__name__)

# Publish a progress snapshot every N processed items
PUBLISH_EVERY = 10
EMBED_CHUNK_SIZE = 64


def _load_session(db, job) -> SyncSession:
    payload = job.payload or {}
    session_id_raw = payload.get("session_id")
    if not session_id_raw:
        raise FatalSyncError(f"Missing session_id in {job.kind} payload")
    try:
        session_id = UUID(str(session_id_raw))
    except ValueError as exc:
        raise FatalSyncError(f"Invalid session_id in {job.kind} payload") from exc

    session = sync_session_service.get_session(db, session_id, user_id=job.user_id)
    if session is None:
        raise FatalSyncError(f"Sync session {session_id} not found")
    if session.batch_id != job.batch_id:
        raise FatalSyncError("Job batch does not match its sync session")
    _check_cancel(db, session)
    return session


def _check_cancel(db, session: SyncSession) -> None:
    if sync_session_service.is_cancel_requested(db, session.id):
        raise SyncCancelled(str(session.id))
    db.refresh(session)
    if sync_session_service.is_terminal(session):
        # Closed elsewhere (e.g. credential disconnected)
        raise SyncCancelled(str(session.id))


def _next_payload(job, **extra: Any) -> dict[str, Any]:
    payload = dict(job.payload or {})
    payload.update(extra)
    return payload


def _log_context(job, session: SyncSession) -> dict[str, Any]:
    return build_log_context(
        user_id=job.user_id,
        session_id=session.id,
        batch_id=job.batch_id,
        job_id=job.id,
        job_kind=job.kind,
        provider=session.service,
    )


def _enqueue_stage(db, job, kind: JobKind, payload: dict[str, Any]):
    # One job per stage and batch
    return job_service.enqueue(
        db,
        user_id=job.user_id,
        kind=kind,
        payload=payload,
        batch_id=job.batch_id,
        idempotency_key=f"{job.batch_id}:{kind.value}",
    )


async def process_fetch(db, job) -> dict[str, Any]:
    """
    Fetch the incremental window into ``raw_events``.

    Payload:
      - session_id (required)
      - incremental (optional, default True)
      - overlap_hours (optional)

    Safe to re-run: records landed by an earlier attempt of this batch still
    count as imported, and the cursor only moves once the next stage is queued.
    """
    session = _load_session(db, job)
    service = SyncService(session.service)
    provider = SERVICE_PROVIDER[service]
    payload = job.payload or {}

    if session.status == SyncStatus.STARTED.value:
        session = sync_session_service.advance(
            db,
            session.id,
            {"status": SyncStatus.IMPORTING, "current_step": f"Importing from {service.value}"},
        )
        await sync_service.publish_session(session)

    window = fetch_service.compute_window(
        db,
        job.user_id,
        provider,
        overlap_hours=payload.get("overlap_hours"),
        incremental=payload.get("incremental", True),
        preferences=session.preferences,
    )
    client = google_client.get_provider_client(provider)
    outcome = await fetch_service.run_fetch(
        db,
        client,
        job.user_id,
        provider,
        job.batch_id,
        window,
        should_stop=lambda: sync_session_service.is_cancel_requested(db, session.id),
        advance=False,
    )
    _check_cancel(db, session)

    imported = len(raw_event_service.list_batch_events(db, job.user_id, job.batch_id))
    session = sync_session_service.advance(
        db,
        session.id,
        {
            "total_items": imported,
            "imported_items": imported,
            "processed_items": 0,
            "failed_items": outcome.failed,
        },
    )
    result = {
        "windowStart": window.start.isoformat(),
        "windowEnd": window.end.isoformat(),
        "listed": outcome.listed,
        "imported": imported,
        "skipped": outcome.skipped,
        "failed": outcome.failed,
        "cursorAdvanced": outcome.window_complete,
    }
    logger.info(
        "Fetch stage done imported=%d skipped=%d failed=%d",
        imported,
        outcome.skipped,
        outcome.failed,
        extra=_log_context(job, session),
    )

    if imported == 0:
        if outcome.window_complete:
            fetch_service.advance_cursor(db, job.user_id, provider, window.end, batch_id=job.batch_id)
        await sync_service.complete_session(db, session.id)
        return result

    if session.status != SyncStatus.PROCESSING.value:
        session = sync_session_service.advance(
            db,
            session.id,
            {"status": SyncStatus.PROCESSING, "current_step": f"Processing {imported} items"},
        )
    _enqueue_stage(db, job, JobKind.NORMALIZE, _next_payload(job, fetch_failed=outcome.failed))
    if outcome.window_complete:
        fetch_service.advance_cursor(db, job.user_id, provider, window.end, batch_id=job.batch_id)
    await sync_service.publish_session(session)
    return result


async def process_normalize(db, job) -> dict[str, Any]:
    """Parse the batch's raw events into interactions."""
    session = _load_session(db, job)
    fetch_failed = int((job.payload or {}).get("fetch_failed", 0))
    raw_events = raw_event_service.list_batch_events(db, job.user_id, job.batch_id)
    total = len(raw_events)

    failed = 0
    for index, raw_event in enumerate(raw_events, start=1):
        _check_cancel(db, session)
        try:
            normalize_service.normalize_raw_event(db, raw_event, job.batch_id)
        except PayloadError as exc:
            db.rollback()
            failed += 1
            logger.warning(
                "Skipping unparseable record: %s",
                exc,
                extra=_log_context(job, session),
            )

        # Absolute counts keep a retried stage from double counting
        session = sync_session_service.advance(
            db,
            session.id,
            {"processed_items": index, "failed_items": fetch_failed + failed},
        )
        if index % PUBLISH_EVERY == 0 or index == total:
            job_service.update_progress(db, job.id, index / max(total, 1) * 100)
            await sync_service.publish_session(session)

    session = sync_session_service.advance(db, session.id, {"current_step": "Extracting contacts and tasks"})
    _enqueue_stage(db, job, JobKind.EXTRACT_ENTITIES, _next_payload(job, normalize_failed=failed))
    await sync_service.publish_session(session)
    return {"processed": total, "failed": failed}


def _entity_payload(entity, approval) -> dict[str, Any]:
    if isinstance(entity, Contact):
        data = {
            "id": str(entity.id),
            "email": entity.primary_email,
            "displayName": entity.display_name,
            "confidence": entity.confidence,
            "status": entity.status,
        }
    else:
        data = {
            "id": str(entity.id),
            "title": entity.title,
            "priority": entity.priority,
            "status": entity.status,
        }
    data["approvalId"] = str(approval.id) if approval else None
    return data


async def process_extract_entities(db, job) -> dict[str, Any]:
    """Derive contacts and tasks from the batch's interactions."""
    session = _load_session(db, job)
    provider = SERVICE_PROVIDER[SyncService(session.service)]
    credential = oauth_service.get_credential(db, job.user_id, provider)
    owner_email = credential.account_email if credential else None
    if not owner_email:
        user = db.get(User, job.user_id)
        owner_email = user.email if user else None

    generator = suggestion_service.get_suggestion_generator()
    interactions = normalize_service.list_batch_interactions(db, job.user_id, job.batch_id)
    counts = {"created": 0, "pending": 0, "skipped": 0}

    for interaction in interactions:
        _check_cancel(db, session)
        try:
            suggestions = await generator.suggest(interaction, owner_email=owner_email)
        except PayloadError as exc:
            logger.warning("Suggestion failed for interaction: %s", exc, extra=_log_context(job, session))
            counts["skipped"] += 1
            continue

        for suggestion in suggestions:
            outcome = approval_service.submit_suggestion(db, job.user_id, job.batch_id, suggestion)
            counts[outcome.action] += 1
            if outcome.entity is None:
                continue
            event_type = (
                "contact_created"
                if suggestion.artifact_type == ArtifactType.CONTACT
                else "task_created"
            )
            await events.publish(job.user_id, event_type, _entity_payload(outcome.entity, outcome.approval))

    logger.info(
        "Extract stage done created=%d pending=%d skipped=%d",
        counts["created"],
        counts["pending"],
        counts["skipped"],
        extra=_log_context(job, session),
    )

    if (session.preferences or {}).get("embed", True) is False:
        await sync_service.complete_session(db, session.id)
        return counts

    session = sync_session_service.advance(db, session.id, {"current_step": "Indexing for search"})
    _enqueue_stage(db, job, JobKind.EMBED, _next_payload(job))
    await sync_service.publish_session(session)
    return counts


async def _embed_batch(db, job) -> int:
    provider = ai_provider.get_embedding_provider()
    pending: list[tuple[str, UUID, str]] = []

    for interaction in normalize_service.list_batch_interactions(db, job.user_id, job.batch_id):
        text = f"{interaction.subject}\n{interaction.body_text}".strip()
        if text and entity_service.needs_embedding(db, job.user_id, "interaction", interaction.id, text):
            pending.append(("interaction", interaction.id, text))

    for contact in entity_service.list_contacts(db, job.user_id, status=EntityStatus.ACTIVE):
        text = f"{contact.display_name} <{contact.primary_email}>"
        if entity_service.needs_embedding(db, job.user_id, "contact", contact.id, text):
            pending.append(("contact", contact.id, text))

    written = 0
    for start in range(0, len(pending), EMBED_CHUNK_SIZE):
        chunk = pending[start : start + EMBED_CHUNK_SIZE]
        vectors = await provider.embed([text for _, _, text in chunk])
        for (owner_type, owner_id, text), vector in zip(chunk, vectors):
            entity_service.upsert_embedding(
                db, job.user_id, owner_type, owner_id, text, vector, provider.model
            )
            written += 1
    return written


async def process_embed(db, job) -> dict[str, Any]:
    """
    Compute embeddings for the batch, then complete the session.

    Best-effort: an embedding failure is logged and never fails the sync.
    """
    session = _load_session(db, job)
    result: dict[str, Any] = {"embedded": 0}
    try:
        result["embedded"] = await _embed_batch(db, job)
    except Exception as exc:
        db.rollback()
        result["error"] = type(exc).__name__
        logger.warning(
            "Embedding failed, completing sync without it: %s",
            type(exc).__name__,
            extra=_log_context(job, session),
        )

    _check_cancel(db, session)
    await sync_service.complete_session(db, session.id)
    return result
