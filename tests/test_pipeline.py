"""End-to-end pipeline runs through the worker with a fake mail provider."""

import uuid
from datetime import timedelta

import pytest

from conftest import gmail_message
from omnisync.core.errors import NotConnectedError, ReconnectRequiredError, TransientSyncError
from omnisync.core.events import broker
from omnisync.db.enums import CredentialStatus, EntityStatus, JobKind, JobStatus, Provider, SyncService, SyncStatus
from omnisync.db.models import Contact, Embedding, Interaction, Job, PendingApproval, RawEvent, Task
from omnisync.services import fetch_service, job_service, oauth_service, sync_service, sync_session_service
from omnisync.worker import process_available_jobs


def _drain(queue) -> list[dict]:
    frames = []
    while not queue.empty():
        frames.append(queue.get_nowait())
    return frames


def _inbox(fake_mail, owner_email):
    fake_mail.records = {
        "m1": gmail_message(
            "m1", sender="Ada Lovelace <ada@example.com>", to=owner_email, subject="Intro"
        ),
        "m2": gmail_message(
            "m2",
            sender="grace@example.com",
            to=owner_email,
            subject="Paperwork",
            body="Could you please send the signed form by Friday?",
        ),
        "m3": gmail_message(
            "m3", sender="No Reply <noreply@example.com>", to=owner_email, subject="Receipt"
        ),
    }


async def _run_sync(db, user, **kwargs):
    result = await sync_service.trigger_sync(db, user.id, SyncService.GMAIL, **kwargs)
    await process_available_jobs(db)
    return sync_session_service.get_session(db, uuid.UUID(result["sessionId"]))


@pytest.mark.asyncio
async def test_full_sync_completes_and_publishes(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    queue = broker.subscribe(test_user.id)
    try:
        session = await _run_sync(db, test_user)
        frames = _drain(queue)
    finally:
        broker.unsubscribe(test_user.id, queue)

    assert session.status == SyncStatus.COMPLETED.value
    assert session.total_items == 3
    assert session.imported_items == 3
    assert session.processed_items == 3
    assert session.failed_items == 0
    assert session.progress_percentage == 100.0
    assert session.error_details is None

    jobs = db.query(Job).filter(Job.batch_id == session.batch_id).all()
    assert {j.kind for j in jobs} == {k.value for k in JobKind}
    assert all(j.status == JobStatus.COMPLETED.value for j in jobs)

    assert db.query(RawEvent).count() == 3
    assert db.query(Interaction).count() == 3

    # Named sender is committed, bare address waits for review, noreply is ignored
    ada = db.query(Contact).filter(Contact.primary_email == "ada@example.com").one()
    assert ada.status == EntityStatus.ACTIVE.value
    grace = db.query(Contact).filter(Contact.primary_email == "grace@example.com").one()
    assert grace.status == EntityStatus.PENDING_APPROVAL.value
    assert db.query(Contact).filter(Contact.primary_email == "noreply@example.com").count() == 0

    task = db.query(Task).one()
    assert task.status == EntityStatus.PENDING_APPROVAL.value
    assert db.query(PendingApproval).count() == 2

    assert db.query(Embedding).count() > 0
    assert fetch_service.get_cursor(db, test_user.id, Provider.MAIL) is not None

    types = [f["type"] for f in frames]
    assert "gmail_progress" in types
    assert "contact_created" in types
    assert "task_created" in types
    assert "sync_complete" in types
    complete = next(f["data"] for f in frames if f["type"] == "sync_complete")
    assert complete["sessionId"] == str(session.id)
    assert complete["processedItems"] == 3


@pytest.mark.asyncio
async def test_resync_is_idempotent(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    await _run_sync(db, test_user)
    contacts_before = db.query(Contact).count()

    second = await _run_sync(db, test_user)

    assert second.status == SyncStatus.COMPLETED.value
    assert second.imported_items == 0
    assert db.query(RawEvent).count() == 3
    assert db.query(Interaction).count() == 3
    assert db.query(Contact).count() == contacts_before
    assert db.query(Task).count() == 1
    # Second window starts before the first cursor
    assert fake_mail.windows[1].start < fake_mail.windows[0].end


@pytest.mark.asyncio
async def test_embed_can_be_skipped(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)

    session = await _run_sync(db, test_user, preferences={"embed": False})

    assert session.status == SyncStatus.COMPLETED.value
    assert db.query(Job).filter(Job.kind == JobKind.EMBED.value).count() == 0
    assert db.query(Embedding).count() == 0


@pytest.mark.asyncio
async def test_record_failures_complete_with_partial_failure(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    fake_mail.errors = {"m3": TransientSyncError("record 503")}

    session = await _run_sync(db, test_user)

    assert session.status == SyncStatus.COMPLETED.value
    assert session.imported_items == 2
    assert session.processed_items == 2
    assert session.failed_items == 1
    assert session.error_details["reason"] == "partial_failure"
    # Cursor stays put so the failed record is retried next time
    assert fetch_service.get_cursor(db, test_user.id, Provider.MAIL) is None


@pytest.mark.asyncio
async def test_unparseable_record_is_counted_not_fatal(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    fake_mail.records["m4"] = {"id": "m4", "payload": {"headers": []}}

    session = await _run_sync(db, test_user)

    assert session.status == SyncStatus.COMPLETED.value
    assert session.imported_items == 4
    assert session.processed_items == 4
    assert session.failed_items == 1
    assert db.query(Interaction).count() == 3


@pytest.mark.asyncio
async def test_empty_window_completes_immediately(db, test_user, mail_credential, fake_mail):
    session = await _run_sync(db, test_user)

    assert session.status == SyncStatus.COMPLETED.value
    assert session.total_items == 0
    assert db.query(Job).filter(Job.kind == JobKind.NORMALIZE.value).count() == 0


@pytest.mark.asyncio
async def test_session_preferences_shape_first_window(db, test_user, mail_credential, fake_mail):
    session = await _run_sync(db, test_user, preferences={"gmailTimeRangeDays": 3})

    assert session.status == SyncStatus.COMPLETED.value
    window = fake_mail.windows[0]
    assert window.end - window.start == timedelta(days=3)


@pytest.mark.asyncio
async def test_transient_listing_failure_is_retried(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    fake_mail.list_errors = [TransientSyncError("list 503")]

    session = await _run_sync(db, test_user)

    fetch = db.query(Job).filter(Job.kind == JobKind.FETCH.value).one()
    assert fetch.status == JobStatus.QUEUED.value
    assert fetch.attempts == 1
    assert fetch.error_code == "temporary_failure"
    assert session.status == SyncStatus.IMPORTING.value

    # Backoff elapsed
    fetch.run_at = fetch.run_at - timedelta(hours=1)
    db.commit()
    await process_available_jobs(db)

    db.refresh(session)
    assert session.status == SyncStatus.COMPLETED.value
    assert session.imported_items == 3


@pytest.mark.asyncio
async def test_fetch_retried_after_enqueue_failure_keeps_records(
    db, test_user, mail_credential, fake_mail, monkeypatch
):
    _inbox(fake_mail, test_user.email)
    real_enqueue = job_service.enqueue
    enqueue_errors = [TransientSyncError("queue unavailable")]

    def flaky_enqueue(*args, **kwargs):
        if kwargs.get("kind") == JobKind.NORMALIZE and enqueue_errors:
            raise enqueue_errors.pop()
        return real_enqueue(*args, **kwargs)

    monkeypatch.setattr(job_service, "enqueue", flaky_enqueue)

    session = await _run_sync(db, test_user)

    fetch = db.query(Job).filter(Job.kind == JobKind.FETCH.value).one()
    assert fetch.status == JobStatus.QUEUED.value
    assert fetch.attempts == 1
    assert db.query(RawEvent).count() == 3
    # Cursor waits until the next stage is queued
    assert fetch_service.get_cursor(db, test_user.id, Provider.MAIL) is None

    fetch.run_at = fetch.run_at - timedelta(hours=1)
    db.commit()
    await process_available_jobs(db)

    db.refresh(session)
    assert session.status == SyncStatus.COMPLETED.value
    assert session.imported_items == 3
    assert session.processed_items == 3
    assert db.query(Interaction).count() == 3
    assert db.query(Job).filter(Job.kind == JobKind.NORMALIZE.value).count() == 1
    assert fetch_service.get_cursor(db, test_user.id, Provider.MAIL) is not None


@pytest.mark.asyncio
async def test_retries_exhausted_fails_session(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    fake_mail.list_errors = [TransientSyncError("list 503")]
    result = await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)
    fetch = db.query(Job).one()
    fetch.max_attempts = 1
    db.commit()

    await process_available_jobs(db)

    session = sync_session_service.get_session(db, uuid.UUID(result["sessionId"]))
    assert session.status == SyncStatus.FAILED.value
    assert session.error_details["reason"] == "temporary_failure"
    assert session.error_details["stage"] == "fetch"


@pytest.mark.asyncio
async def test_invalid_grant_mid_run_requires_reconnect(db, test_user, fake_mail, monkeypatch):
    from conftest import make_credential

    async def revoked(refresh_token: str):
        raise ReconnectRequiredError("Google rejected the refresh token (invalid_grant)")

    monkeypatch.setattr(oauth_service, "refresh_google_token", revoked)
    make_credential(db, test_user, expires_in=timedelta(seconds=-60))
    _inbox(fake_mail, test_user.email)

    session = await _run_sync(db, test_user)

    assert session.status == SyncStatus.FAILED.value
    assert session.error_details["reason"] == "reconnect_required"
    fetch = db.query(Job).one()
    assert fetch.status == JobStatus.ERROR.value
    assert fetch.error_code == "reconnect_required"
    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    assert credential.status == CredentialStatus.DISCONNECTED.value

    with pytest.raises(NotConnectedError) as exc:
        await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)
    assert exc.value.code == "reconnect_required"


@pytest.mark.asyncio
async def test_token_rejected_mid_batch_is_refreshed(db, test_user, fake_mail, monkeypatch):
    from conftest import make_credential

    async def refreshed(refresh_token: str):
        return {"access_token": "fresh-token", "expires_in": 3600}

    monkeypatch.setattr(oauth_service, "refresh_google_token", refreshed)
    make_credential(db, test_user, access_token="revoked-token")
    fake_mail.rejected_tokens = {"revoked-token"}
    _inbox(fake_mail, test_user.email)

    session = await _run_sync(db, test_user)

    assert session.status == SyncStatus.COMPLETED.value
    assert session.imported_items == 3
    assert "fresh-token" in fake_mail.tokens_seen


@pytest.mark.asyncio
async def test_cancelled_session_stops_pipeline(db, test_user, mail_credential, fake_mail):
    _inbox(fake_mail, test_user.email)
    result = await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)
    session_id = uuid.UUID(result["sessionId"])
    sync_session_service.request_cancel(db, session_id, test_user.id)

    await process_available_jobs(db)

    session = sync_session_service.get_session(db, session_id)
    assert session.status == SyncStatus.CANCELLED.value
    jobs = db.query(Job).all()
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.COMPLETED.value
    assert jobs[0].result == {"cancelled": True}
    assert db.query(RawEvent).count() == 0


@pytest.mark.asyncio
async def test_trigger_reuses_running_session(db, test_user, mail_credential):
    first = await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)
    second = await sync_service.trigger_sync(db, test_user.id, SyncService.GMAIL)

    assert second["reused"] is True
    assert second["sessionId"] == first["sessionId"]
    assert db.query(Job).count() == 1


@pytest.mark.asyncio
async def test_trigger_without_credential(db, test_user):
    with pytest.raises(NotConnectedError) as exc:
        await sync_service.trigger_sync(db, test_user.id, SyncService.CALENDAR)
    assert exc.value.code == "not_connected"


@pytest.mark.asyncio
async def test_scheduled_syncs_are_deduplicated(db, test_user, mail_credential):
    assert await sync_service.schedule_due_syncs(db) == 1
    assert await sync_service.schedule_due_syncs(db) == 0

    jobs = db.query(Job).all()
    assert len(jobs) == 1
    assert jobs[0].idempotency_key.startswith(f"scheduled-sync:{test_user.id}:gmail:")
