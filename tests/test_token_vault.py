import asyncio
from datetime import timedelta
import uuid

import httpx
import pytest

from conftest import make_credential
from omnisync.core.encryption import decrypt_token, encrypt_token
from omnisync.core.errors import FatalSyncError, ReconnectRequiredError, TransientSyncError
from omnisync.db.enums import CredentialStatus, JobKind, JobStatus, Provider, SyncService, SyncStatus
from omnisync.db.types import utcnow
from omnisync.services import job_service, oauth_service, sync_session_service


def _fake_refresh(monkeypatch, tokens=None, error=None):
    calls = []

    async def fake_refresh_google_token(refresh_token: str):
        calls.append(refresh_token)
        await asyncio.sleep(0)
        if error is not None:
            raise error
        return tokens or {"access_token": "new-access", "expires_in": 3600}

    monkeypatch.setattr(oauth_service, "refresh_google_token", fake_refresh_google_token)
    return calls


def test_tokens_encrypted_at_rest(db, test_user):
    credential = make_credential(db, test_user, access_token="plain-access")

    assert credential.access_token_encrypted != "plain-access"
    assert decrypt_token(credential.access_token_encrypted) == "plain-access"
    assert encrypt_token("") == ""


def test_decrypt_rejects_garbage():
    with pytest.raises(ValueError):
        decrypt_token("not-a-fernet-token")


def test_store_credential_reconnects(db, test_user):
    make_credential(db, test_user, status=CredentialStatus.DISCONNECTED)

    credential = oauth_service.store_credential(
        db,
        test_user.id,
        Provider.MAIL,
        {"access_token": "a2", "refresh_token": "r2", "expires_in": 3600, "scope": "s1 s2"},
    )

    assert credential.status == CredentialStatus.CONNECTED.value
    assert credential.scopes == ["s1", "s2"]
    assert decrypt_token(credential.refresh_token_encrypted) == "r2"
    assert credential.expires_at > utcnow()


@pytest.mark.asyncio
async def test_fresh_token_returned_without_refresh(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user, access_token="still-good")

    token = await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)

    assert token == "still-good"
    assert calls == []


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user, expires_in=timedelta(seconds=10))

    credential = await oauth_service.get_valid_credential(db, test_user.id, Provider.MAIL)

    assert calls == ["refresh-token"]
    assert decrypt_token(credential.access_token_encrypted) == "new-access"
    assert credential.expires_at > utcnow() + timedelta(minutes=30)
    assert credential.last_refreshed_at is not None
    assert credential.refresh_locked_until is None


@pytest.mark.asyncio
async def test_force_refresh_after_rejection(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user)

    token = await oauth_service.get_access_token(db, test_user.id, Provider.MAIL, force_refresh=True)

    assert token == "new-access"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user, expires_in=timedelta(seconds=-60))

    tokens = await asyncio.gather(
        *(oauth_service.get_access_token(db, test_user.id, Provider.MAIL) for _ in range(3))
    )

    assert tokens == ["new-access"] * 3
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_invalid_grant_disconnects_and_fails_sessions(db, test_user, monkeypatch):
    _fake_refresh(monkeypatch, error=ReconnectRequiredError("invalid_grant"))
    make_credential(db, test_user, expires_in=timedelta(seconds=-60))
    batch_id = uuid.uuid4()
    session = sync_session_service.start(db, test_user.id, SyncService.GMAIL, {}, batch_id)
    job = job_service.enqueue(
        db, test_user.id, JobKind.FETCH, {"session_id": str(session.id)}, batch_id
    )

    with pytest.raises(ReconnectRequiredError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)

    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    assert credential.status == CredentialStatus.DISCONNECTED.value
    assert credential.last_error_code == "reconnect_required"

    db.refresh(session)
    assert session.status == SyncStatus.FAILED.value
    assert session.error_details["reason"] == "reconnect_required"
    assert session.error_details["stage"] == "auth"

    db.refresh(job)
    assert job.status == JobStatus.ERROR.value
    assert job.error_code == "reconnect_required"


@pytest.mark.asyncio
async def test_disconnected_credential_is_never_refreshed(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user, status=CredentialStatus.DISCONNECTED)

    with pytest.raises(ReconnectRequiredError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL, force_refresh=True)
    assert calls == []


@pytest.mark.asyncio
async def test_missing_credential_requires_reconnect(db, test_user):
    with pytest.raises(ReconnectRequiredError):
        await oauth_service.get_access_token(db, test_user.id, Provider.CALENDAR)


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reconnect(db, test_user, monkeypatch):
    calls = _fake_refresh(monkeypatch)
    make_credential(db, test_user, refresh_token=None, expires_in=timedelta(seconds=-60))

    with pytest.raises(ReconnectRequiredError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)

    assert calls == []
    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    assert credential.status == CredentialStatus.DISCONNECTED.value


@pytest.mark.asyncio
async def test_transient_refresh_failure_keeps_credential(db, test_user, monkeypatch):
    _fake_refresh(monkeypatch, error=TransientSyncError("token endpoint 503"))
    make_credential(db, test_user, expires_in=timedelta(seconds=-60))

    with pytest.raises(TransientSyncError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)

    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    db.refresh(credential)
    assert credential.status == CredentialStatus.CONNECTED.value
    assert credential.refresh_locked_until is None
    assert credential.last_error_code == "temporary_failure"


def _forbidden() -> httpx.HTTPStatusError:
    request = httpx.Request("POST", oauth_service.GOOGLE_TOKEN_URL)
    response = httpx.Response(403, request=request)
    return httpx.HTTPStatusError("403 Forbidden", request=request, response=response)


@pytest.mark.asyncio
@pytest.mark.parametrize("error_factory", [_forbidden, lambda: ValueError("not json")])
async def test_unexpected_refresh_failure_releases_claim(db, test_user, monkeypatch, error_factory):
    _fake_refresh(monkeypatch, error=error_factory())
    make_credential(db, test_user, expires_in=timedelta(seconds=-60))

    with pytest.raises(FatalSyncError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)

    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    db.refresh(credential)
    assert credential.status == CredentialStatus.CONNECTED.value
    assert credential.refresh_locked_until is None
    assert credential.last_error_code is not None


@pytest.mark.asyncio
async def test_waits_out_refresh_claimed_elsewhere(db, test_user, monkeypatch):
    from omnisync.core.config import settings

    calls = _fake_refresh(monkeypatch)
    monkeypatch.setattr(settings, "TOKEN_REFRESH_LOCK_SECONDS", 1)
    monkeypatch.setattr(oauth_service, "REFRESH_WAIT_INTERVAL_SECONDS", 0.05)
    credential = make_credential(db, test_user, expires_in=timedelta(seconds=-60))
    credential.refresh_locked_until = utcnow() + timedelta(minutes=5)
    db.commit()

    with pytest.raises(TransientSyncError):
        await oauth_service.get_access_token(db, test_user.id, Provider.MAIL)
    assert calls == []
