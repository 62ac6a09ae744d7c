"""
Background worker for the sync pipeline.

Usage:
    python -m omnisync.worker

Runs ``WORKER_CONCURRENCY`` runners that claim jobs atomically from the job
store, plus a ticker that recovers stuck jobs, starts scheduled syncs and
prunes old jobs. Run it as a separate process from the API.
"""

import asyncio
import logging

from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.errors import SyncCancelled, TransientSyncError, classify_error
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import JobKind, JobStatus
from omnisync.db.models import Job
from omnisync.db.session import SessionLocal
from omnisync.jobs.registry import resolve_job_handler
from omnisync.services import job_service, sync_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def _job_context(job: Job) -> dict:
    return build_log_context(
        user_id=job.user_id,
        batch_id=job.batch_id,
        job_id=job.id,
        job_kind=job.kind,
    )


async def run_job(db: Session, job: Job) -> Job:
    """
    Execute one claimed job and record its outcome.

    Never raises for handler errors: failures are classified, recorded on the
    job and, once the job gives up, on its sync session.
    """
    job_id = job.id
    logger.info("Processing job (attempt %d)", job.attempts, extra=_job_context(job))

    try:
        handler = resolve_job_handler(job.kind)
        result = await asyncio.wait_for(handler(db, job), timeout=settings.JOB_TIMEOUT_SECONDS)
    except SyncCancelled:
        db.rollback()
        job = job_service.complete(db, job_id, {"cancelled": True})
        logger.info("Job stopped, session cancelled", extra=_job_context(job))
        return job
    except Exception as e:
        db.rollback()
        error = classify_error(e)
        job = job_service.fail(
            db,
            job_id,
            str(error),
            retryable=error.retryable,
            error_code=error.code,
        )
        logger.error(
            "Job failed: %s (%s)",
            type(e).__name__,
            error.code,
            extra=_job_context(job),
        )
        if job.status != JobStatus.ERROR.value:
            await sync_service.publish_job_progress(job)
        elif job.kind == JobKind.EMBED.value:
            # Embedding is best-effort and never fails the sync
            await sync_service.complete_session(db, sync_service.session_id_for_job(job))
        else:
            await sync_service.fail_session_for_job(db, job, error)
        return job

    job = job_service.complete(db, job_id, result)
    await sync_service.publish_job_progress(job)
    logger.info("Job completed", extra=_job_context(job))
    return job


async def process_available_jobs(db: Session, limit: int | None = None) -> int:
    """Run due jobs one after another until none is left. Returns how many ran."""
    processed = 0
    while limit is None or processed < limit:
        job = job_service.claim_next(db)
        if job is None:
            break
        await run_job(db, job)
        processed += 1
    return processed


async def run_maintenance(db: Session) -> None:
    """One ticker pass: recover stuck jobs, start due syncs, prune old jobs."""
    for job in job_service.reset_stuck_jobs(db):
        if job is not None and job.status == JobStatus.ERROR.value:
            await sync_service.fail_session_for_job(
                db, job, TransientSyncError("Job timed out", code="timeout")
            )
    await sync_service.schedule_due_syncs(db)
    job_service.cleanup_old_jobs(db)


async def runner_loop(runner_id: int, stop: asyncio.Event) -> None:
    """Claim and run jobs until stopped."""
    while not stop.is_set():
        ran = False
        with SessionLocal() as db:
            try:
                job = job_service.claim_next(db)
                if job is not None:
                    await run_job(db, job)
                    ran = True
            except Exception:
                logger.exception("Error in runner %d", runner_id)
        if not ran:
            await asyncio.sleep(settings.WORKER_POLL_INTERVAL)


async def ticker_loop(stop: asyncio.Event) -> None:
    """Periodic maintenance until stopped."""
    while not stop.is_set():
        with SessionLocal() as db:
            try:
                await run_maintenance(db)
            except Exception:
                logger.exception("Error in worker ticker")
        await asyncio.sleep(settings.WORKER_TICK_SECONDS)


async def worker_loop(concurrency: int | None = None, stop: asyncio.Event | None = None) -> None:
    """Main worker loop - N runners plus one ticker."""
    runners = max(concurrency or settings.WORKER_CONCURRENCY, 1)
    stop = stop or asyncio.Event()
    logger.info(
        f"Worker starting (runners: {runners}, poll interval: {settings.WORKER_POLL_INTERVAL}s)"
    )
    tasks = [asyncio.create_task(runner_loop(i, stop)) for i in range(runners)]
    tasks.append(asyncio.create_task(ticker_loop(stop)))
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def main() -> None:
    """Entry point for the worker."""
    if settings.SENTRY_DSN and settings.ENV != "dev":
        import sentry_sdk

        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENV,
            traces_sample_rate=0.1,
            send_default_pii=False,
        )
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
