import asyncio

import httpx
import pytest

from omnisync.core.errors import (
    FatalSyncError,
    PayloadError,
    TokenRefreshError,
    TransientSyncError,
    classify_error,
)
from omnisync.db.enums import JobKind
from omnisync.jobs.registry import JOB_HANDLERS, resolve_job_handler


def test_every_stage_has_a_handler():
    assert set(JOB_HANDLERS) == {kind.value for kind in JobKind}
    for kind in JobKind:
        assert callable(resolve_job_handler(kind.value))


def test_unknown_kind_raises():
    with pytest.raises(ValueError):
        resolve_job_handler("send_newsletter")


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://provider.test")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(status, request=request))


def test_classify_provider_status_codes():
    assert isinstance(classify_error(_status_error(401)), TokenRefreshError)
    assert isinstance(classify_error(_status_error(429)), TransientSyncError)
    assert isinstance(classify_error(_status_error(503)), TransientSyncError)
    assert isinstance(classify_error(_status_error(404)), FatalSyncError)


def test_classify_network_and_unknown_errors():
    assert classify_error(asyncio.TimeoutError()).code == "timeout"
    assert classify_error(httpx.ConnectError("refused")).retryable is True
    assert classify_error(KeyError("x")).retryable is False


def test_classified_errors_pass_through():
    error = PayloadError("bad record")
    assert classify_error(error) is error
    assert error.retryable is False


@pytest.mark.asyncio
async def test_unknown_job_kind_fails_job(db, test_user):
    import uuid

    from omnisync.db.enums import JobStatus
    from omnisync.db.models import Job
    from omnisync.worker import process_available_jobs

    job = Job(
        user_id=test_user.id,
        batch_id=uuid.uuid4(),
        kind="unknown",
        payload={},
    )
    db.add(job)
    db.commit()

    assert await process_available_jobs(db) == 1

    db.refresh(job)
    assert job.status == JobStatus.ERROR.value
    assert job.error_code == "internal_error"


@pytest.mark.asyncio
async def test_maintenance_fails_session_of_stuck_job(db, test_user, mail_credential):
    import uuid
    from datetime import timedelta

    from omnisync.db.enums import JobStatus, SyncService, SyncStatus
    from omnisync.db.types import utcnow
    from omnisync.services import job_service, sync_service, sync_session_service
    from omnisync.worker import run_maintenance

    result = await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)
    job = job_service.claim_next(db)
    job.started_at = utcnow() - timedelta(hours=2)
    job.attempts = job.max_attempts
    db.commit()

    await run_maintenance(db)

    db.refresh(job)
    assert job.status == JobStatus.ERROR.value
    session = sync_session_service.get_session(db, uuid.UUID(result["sessionId"]))
    assert session.status == SyncStatus.FAILED.value
    assert session.error_details["code"] == "timeout"
