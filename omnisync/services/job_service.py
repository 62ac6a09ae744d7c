"""Job service - durable queue for pipeline stages.

Runners claim queued jobs with a conditional UPDATE so that a job is only ever
executed by one runner, even with many runners polling the same table.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import OPEN_JOB_STATUSES, PIPELINE_ORDER, JobKind, JobStatus
from omnisync.db.models import Job
from omnisync.db.types import utcnow

logger = logging.getLogger(__name__)

# How many due candidates to consider per claim attempt
CLAIM_CANDIDATES = 10


def enqueue(
    db: Session,
    user_id: UUID,
    kind: JobKind,
    payload: dict,
    batch_id: UUID,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
) -> Job:
    """
    Create a queued job.

    If run_at is None, the job is due immediately. When idempotency_key is
    given and a job with the same key exists, the existing job is returned.
    """
    if idempotency_key:
        existing = db.query(Job).filter(Job.idempotency_key == idempotency_key).first()
        if existing:
            return existing

    job = Job(
        user_id=user_id,
        batch_id=batch_id,
        kind=kind.value,
        payload=payload,
        run_at=run_at or utcnow(),
        status=JobStatus.QUEUED.value,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Lost an enqueue race on the idempotency key
        db.rollback()
        existing = db.query(Job).filter(Job.idempotency_key == idempotency_key).first()
        if existing:
            return existing
        raise
    db.refresh(job)
    logger.info(
        "Job enqueued",
        extra=build_log_context(
            user_id=user_id, batch_id=batch_id, job_id=job.id, job_kind=job.kind
        ),
    )
    return job


def _try_claim(db: Session, job_id: UUID) -> bool:
    """Transition one job queued -> running. False if another runner won."""
    now = utcnow()
    result = db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.QUEUED.value)
        .values(
            status=JobStatus.RUNNING.value,
            attempts=Job.attempts + 1,
            started_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def claim_next(db: Session, kinds: list[JobKind] | None = None) -> Job | None:
    """
    Claim the oldest due queued job.

    Returns None when nothing is due or every candidate was claimed by
    another runner first.
    """
    query = db.query(Job.id).filter(
        Job.status == JobStatus.QUEUED.value,
        Job.run_at <= utcnow(),
    )
    if kinds:
        query = query.filter(Job.kind.in_([k.value for k in kinds]))
    candidates = [row.id for row in query.order_by(Job.run_at, Job.created_at).limit(CLAIM_CANDIDATES)]

    for job_id in candidates:
        if _try_claim(db, job_id):
            job = db.get(Job, job_id)
            db.refresh(job)
            return job
    return None


def get_job(db: Session, job_id: UUID, user_id: UUID | None = None) -> Job | None:
    """Get a job by ID, optionally scoped to user."""
    query = db.query(Job).filter(Job.id == job_id)
    if user_id:
        query = query.filter(Job.user_id == user_id)
    return query.first()


def list_jobs(
    db: Session,
    user_id: UUID,
    status: JobStatus | None = None,
    kind: JobKind | None = None,
    batch_id: UUID | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs for a user with optional filters."""
    query = db.query(Job).filter(Job.user_id == user_id)
    if status:
        query = query.filter(Job.status == status.value)
    if kind:
        query = query.filter(Job.kind == kind.value)
    if batch_id:
        query = query.filter(Job.batch_id == batch_id)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def complete(db: Session, job_id: UUID, result: dict | None = None) -> Job | None:
    """Mark a running job as completed."""
    job = db.get(Job, job_id)
    if not job or job.status != JobStatus.RUNNING.value:
        return job
    now = utcnow()
    job.status = JobStatus.COMPLETED.value
    job.result = result
    job.progress = 100
    job.completed_at = now
    job.updated_at = now
    job.last_error = None
    job.error_code = None
    db.commit()
    db.refresh(job)
    return job


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=settings.RETRY_DELAY_BASE_SECONDS * (2**exponent))


def fail(
    db: Session,
    job_id: UUID,
    error: str,
    retryable: bool,
    error_code: str | None = None,
) -> Job | None:
    """
    Record a job failure.

    Retryable failures with attempts left are requeued with backoff; anything
    else ends in ``error``. Failing a job that is already terminal is a no-op.
    """
    job = db.get(Job, job_id)
    if not job or job.status not in OPEN_JOB_STATUSES:
        return job

    now = utcnow()
    job.last_error = error[:2000]
    job.error_code = error_code
    job.updated_at = now
    if retryable and job.attempts < job.max_attempts:
        job.status = JobStatus.QUEUED.value
        job.run_at = now + retry_delay(job.attempts)
    else:
        job.status = JobStatus.ERROR.value
        job.completed_at = now
    db.commit()
    db.refresh(job)
    return job


def update_progress(db: Session, job_id: UUID, pct: float) -> None:
    """Store stage progress, clamped to 0..100."""
    clamped = int(min(max(pct, 0), 100))
    db.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(progress=clamped, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def requeue_job(db: Session, job_id: UUID, user_id: UUID) -> Job | None:
    """Operator retry: put an ``error`` job back on the queue with fresh attempts."""
    job = get_job(db, job_id, user_id=user_id)
    if not job:
        return None
    if job.status != JobStatus.ERROR.value:
        raise ValueError(f"Job {job_id} is {job.status}, only failed jobs can be retried")
    now = utcnow()
    job.status = JobStatus.QUEUED.value
    job.attempts = 0
    job.run_at = now
    job.updated_at = now
    job.completed_at = None
    job.last_error = None
    job.error_code = None
    db.commit()
    db.refresh(job)
    return job


def fail_open_jobs(
    db: Session,
    batch_ids: list[UUID],
    error: str,
    error_code: str,
) -> int:
    """Move every queued/running job of the given batches to ``error``."""
    if not batch_ids:
        return 0
    now = utcnow()
    result = db.execute(
        update(Job)
        .where(Job.batch_id.in_(batch_ids), Job.status.in_(OPEN_JOB_STATUSES))
        .values(
            status=JobStatus.ERROR.value,
            last_error=error,
            error_code=error_code,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def fail_open_jobs_for_provider(
    db: Session,
    user_id: UUID,
    service: str,
    error: str,
    error_code: str,
) -> int:
    """Fail the user's open jobs whose batch syncs ``service``."""
    batch_ids = {
        job.batch_id
        for job in db.query(Job)
        .filter(Job.user_id == user_id, Job.status.in_(OPEN_JOB_STATUSES))
        .all()
        if (job.payload or {}).get("service") == service
    }
    return fail_open_jobs(db, list(batch_ids), error=error, error_code=error_code)


def get_batch_status(db: Session, user_id: UUID, batch_id: UUID) -> dict | None:
    """
    Aggregate the jobs of one batch.

    Returns None when the batch has no jobs for this user.
    """
    jobs = (
        db.query(Job)
        .filter(Job.user_id == user_id, Job.batch_id == batch_id)
        .order_by(Job.created_at)
        .all()
    )
    if not jobs:
        return None

    statuses = {job.status for job in jobs}
    if JobStatus.ERROR.value in statuses:
        status = JobStatus.ERROR.value
    elif statuses & set(OPEN_JOB_STATUSES):
        status = (
            JobStatus.RUNNING.value
            if JobStatus.RUNNING.value in statuses
            or JobStatus.COMPLETED.value in statuses
            else JobStatus.QUEUED.value
        )
    else:
        status = JobStatus.COMPLETED.value

    events_processed = 0
    failed = 0
    for job in jobs:
        result = job.result or {}
        if job.kind == JobKind.NORMALIZE.value:
            events_processed += int(result.get("processed", 0))
        failed += int(result.get("failed", 0))

    stage_rank = {kind.value: i for i, kind in enumerate(PIPELINE_ORDER)}
    ordered = sorted(jobs, key=lambda j: (stage_rank.get(j.kind, 99), j.created_at))
    return {
        "batchId": str(batch_id),
        "status": status,
        "summary": {"eventsProcessed": events_processed, "failed": failed},
        "jobs": [
            {
                "id": str(job.id),
                "kind": job.kind,
                "status": job.status,
                "attempts": job.attempts,
                "progress": job.progress,
                "lastError": job.last_error,
                "errorCode": job.error_code,
            }
            for job in ordered
        ],
    }


def reset_stuck_jobs(db: Session, timeout_seconds: int | None = None) -> list[Job]:
    """
    Recover jobs left ``running`` past the timeout (e.g. a crashed runner).

    Jobs with attempts left are requeued; the rest end in ``error``. The
    default cutoff is twice the job timeout.
    Returns the jobs that were reset.
    """
    timeout = timeout_seconds or settings.JOB_TIMEOUT_SECONDS * 2
    cutoff = utcnow() - timedelta(seconds=timeout)
    stuck = (
        db.query(Job)
        .filter(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff)
        .all()
    )
    reset = []
    for job in stuck:
        reset.append(
            fail(db, job.id, "Job timed out (stuck in running)", retryable=True, error_code="timeout")
        )
    if reset:
        logger.warning("Reset %d stuck jobs", len(reset))
    return reset


def cleanup_old_jobs(db: Session, retention_days: int | None = None) -> int:
    """Delete terminal jobs older than the retention window."""
    days = retention_days or settings.JOB_RETENTION_DAYS
    cutoff = utcnow() - timedelta(days=days)
    deleted = (
        db.query(Job)
        .filter(
            Job.status.in_([JobStatus.COMPLETED.value, JobStatus.ERROR.value]),
            Job.completed_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Cleaned up %d old jobs", deleted)
    return deleted


def get_job_stats(db: Session, user_id: UUID | None = None) -> dict[str, int]:
    """Count jobs per status."""
    query = db.query(Job.status)
    if user_id:
        query = query.filter(Job.user_id == user_id)
    stats = {status.value: 0 for status in JobStatus}
    for (status,) in query.all():
        stats[status] = stats.get(status, 0) + 1
    return stats
