"""Sync orchestration: triggering pipeline runs and closing their sessions."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from omnisync.core import events
from omnisync.core.config import settings
from omnisync.core.errors import (
    NotConnectedError,
    PayloadError,
    ReconnectRequiredError,
    SyncError,
    TokenRefreshError,
    TransientSyncError,
)
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import (
    PROVIDER_SERVICE,
    SERVICE_PROVIDER,
    CredentialStatus,
    FailureReason,
    JobKind,
    Provider,
    SyncService,
    SyncStatus,
)
from omnisync.db.models import Credential, Job, SyncSession
from omnisync.db.types import utcnow
from omnisync.services import job_service, oauth_service, sync_session_service

logger = logging.getLogger(__name__)

# Scheduled syncs are deduplicated per user/service within one bucket
SCHEDULE_BUCKET_SECONDS = 5 * 60


async def publish_session(session: SyncSession) -> None:
    """Publish the current session snapshot as ``{service}_progress``."""
    await events.publish(
        session.user_id,
        f"{session.service}_progress",
        sync_session_service.to_payload(session),
    )


async def publish_job_progress(job: Job) -> None:
    await events.publish(
        job.user_id,
        "job_progress",
        {
            "jobId": str(job.id),
            "batchId": str(job.batch_id),
            "kind": job.kind,
            "status": job.status,
            "attempts": job.attempts,
            "progress": job.progress,
            "lastError": job.last_error,
        },
    )


async def trigger_sync(
    db: Session,
    user_id: uuid.UUID,
    service: SyncService,
    preferences: dict[str, Any] | None = None,
    incremental: bool = True,
    overlap_hours: int | None = None,
    idempotency_key: str | None = None,
) -> dict[str, Any]:
    """
    Start a pipeline run for one service.

    Returns the new session and batch ids. When a session for the service is
    already running, that session is returned instead of starting another.

    Raises:
        NotConnectedError: no connected credential for the service's provider
    """
    provider = SERVICE_PROVIDER[service]
    credential = oauth_service.get_credential(db, user_id, provider)
    if credential is None:
        raise NotConnectedError(provider.value)
    if credential.status != CredentialStatus.CONNECTED.value:
        raise NotConnectedError(provider.value, code=FailureReason.RECONNECT_REQUIRED.value)

    active = sync_session_service.get_active_session(db, user_id, service)
    if active:
        return {"sessionId": str(active.id), "batchId": str(active.batch_id), "reused": True}

    batch_id = uuid.uuid4()
    session = sync_session_service.start(db, user_id, service, preferences, batch_id)
    job_service.enqueue(
        db,
        user_id=user_id,
        kind=JobKind.FETCH,
        payload={
            "session_id": str(session.id),
            "service": service.value,
            "incremental": incremental,
            "overlap_hours": overlap_hours,
        },
        batch_id=batch_id,
        idempotency_key=idempotency_key,
    )
    await publish_session(session)
    return {"sessionId": str(session.id), "batchId": str(batch_id), "reused": False}


def failure_reason(error: SyncError) -> FailureReason:
    """Map a classified error onto the reason shown to the user."""
    if isinstance(error, ReconnectRequiredError):
        return FailureReason.RECONNECT_REQUIRED
    if isinstance(error, (TransientSyncError, TokenRefreshError)):
        return FailureReason.TEMPORARY_FAILURE
    if isinstance(error, PayloadError):
        return FailureReason.PAYLOAD_ERROR
    return FailureReason.INTERNAL_ERROR


def session_id_for_job(job: Job) -> uuid.UUID | None:
    raw = (job.payload or {}).get("session_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


async def fail_session_for_job(db: Session, job: Job, error: SyncError) -> SyncSession | None:
    """
    Fail the session of a job that ended in ``error``.

    Halts only this batch: remaining open jobs of the batch are failed too.
    """
    session_id = session_id_for_job(job)
    if session_id is None:
        return None
    reason = failure_reason(error)
    details = sync_session_service.build_error_details(
        stage=job.kind,
        reason=reason,
        code=error.code,
        message=str(error),
    )
    session = sync_session_service.finish(db, session_id, SyncStatus.FAILED, error_details=details)
    job_service.fail_open_jobs(db, [job.batch_id], error=str(error), error_code=error.code)
    if session is None:
        return None

    await publish_session(session)
    await events.publish(
        session.user_id,
        "error",
        {
            "sessionId": str(session.id),
            "batchId": str(session.batch_id),
            "service": session.service,
            **(session.error_details or details),
        },
    )
    return session


async def complete_session(db: Session, session_id: uuid.UUID | None) -> SyncSession | None:
    """
    Close a session whose pipeline ran to the end.

    Item-level failures do not fail the session; they are reported as
    ``partial_failure`` in the error details.
    """
    if session_id is None:
        return None
    session = sync_session_service.get_session(db, session_id)
    if session is None or sync_session_service.is_terminal(session):
        return session

    # completed is only reachable from processing
    if session.status == SyncStatus.STARTED.value:
        sync_session_service.advance(db, session.id, {"status": SyncStatus.IMPORTING})
    if session.status == SyncStatus.IMPORTING.value:
        sync_session_service.advance(db, session.id, {"status": SyncStatus.PROCESSING})

    details = None
    if session.failed_items > 0:
        details = sync_session_service.build_error_details(
            stage="pipeline",
            reason=FailureReason.PARTIAL_FAILURE,
            code=FailureReason.PARTIAL_FAILURE.value,
            message=f"{session.failed_items} items failed",
        )
    session = sync_session_service.finish(db, session.id, SyncStatus.COMPLETED, error_details=details)
    await publish_session(session)
    await events.publish(
        session.user_id,
        "sync_complete",
        {
            "sessionId": str(session.id),
            "batchId": str(session.batch_id),
            "service": session.service,
            "importedItems": session.imported_items,
            "processedItems": session.processed_items,
            "failedItems": session.failed_items,
        },
    )
    logger.info(
        "Sync completed imported=%d processed=%d failed=%d",
        session.imported_items,
        session.processed_items,
        session.failed_items,
        extra=build_log_context(
            user_id=session.user_id, session_id=session.id, batch_id=session.batch_id
        ),
    )
    return session


async def schedule_due_syncs(db: Session, now: datetime | None = None) -> int:
    """
    Start incremental syncs for connected credentials that are due.

    A credential is due when its latest session started more than
    ``SYNC_SCHEDULE_MINUTES`` ago. Returns the number of syncs started.
    """
    if settings.SYNC_SCHEDULE_MINUTES <= 0:
        return 0
    now = now or utcnow()
    bucket = int(now.timestamp()) // SCHEDULE_BUCKET_SECONDS
    due_before = now - timedelta(minutes=settings.SYNC_SCHEDULE_MINUTES)

    started = 0
    credentials = (
        db.query(Credential)
        .filter(Credential.status == CredentialStatus.CONNECTED.value)
        .all()
    )
    for credential in credentials:
        service = PROVIDER_SERVICE[Provider(credential.provider)]
        latest = sync_session_service.get_latest_session(db, credential.user_id, service)
        if latest is not None and latest.started_at > due_before:
            continue

        idempotency_key = f"scheduled-sync:{credential.user_id}:{service.value}:{bucket}"
        if db.query(Job.id).filter(Job.idempotency_key == idempotency_key).first():
            continue

        try:
            result = await trigger_sync(
                db,
                credential.user_id,
                service,
                idempotency_key=idempotency_key,
            )
        except NotConnectedError:
            continue
        if not result["reused"]:
            started += 1

    if started:
        logger.info("Scheduled %d syncs", started)
    return started
