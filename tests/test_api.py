"""HTTP surface: sync, jobs, approvals, integrations and event stream."""

import uuid
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient

from conftest import make_credential
from omnisync.db.enums import ArtifactType, Provider
from omnisync.services import approval_service
from omnisync.services.suggestion_service import Suggestion


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_session_cookie(client: AsyncClient):
    assert (await client.post("/sync", json={"service": "gmail"})).status_code == 401
    assert (await client.get("/jobs")).status_code == 401
    assert (await client.get("/events/stream")).status_code == 401


@pytest.mark.asyncio
async def test_sync_without_connection_conflicts(authed_client: AsyncClient):
    response = await authed_client.post("/sync", json={"service": "gmail"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "not_connected"


@pytest.mark.asyncio
async def test_sync_rejects_bad_overlap(authed_client: AsyncClient, mail_credential):
    response = await authed_client.post("/sync", json={"service": "gmail", "overlapHours": 0})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_trigger_and_read_session(authed_client: AsyncClient, mail_credential):
    response = await authed_client.post(
        "/sync", json={"service": "gmail", "preferences": {"embed": False}, "overlapHours": 12}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["reused"] is False

    session = await authed_client.get(f"/sync/sessions/{data['sessionId']}")
    assert session.status_code == 200
    body = session.json()
    assert body["status"] == "started"
    assert body["batchId"] == data["batchId"]
    assert body["preferences"] == {"embed": False}
    assert body["progress"]["percentage"] == 0.0

    again = await authed_client.post("/sync", json={"service": "gmail"})
    assert again.json()["reused"] is True
    assert again.json()["sessionId"] == data["sessionId"]

    listed = await authed_client.get("/sync/sessions", params={"service": "gmail"})
    assert [s["sessionId"] for s in listed.json()] == [data["sessionId"]]


@pytest.mark.asyncio
async def test_cancel_session(authed_client: AsyncClient, mail_credential):
    data = (await authed_client.post("/sync", json={"service": "gmail"})).json()

    response = await authed_client.post(f"/sync/sessions/{data['sessionId']}/cancel")

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_unknown_session(authed_client: AsyncClient):
    assert (await authed_client.get(f"/sync/sessions/{uuid.uuid4()}")).status_code == 404
    assert (await authed_client.post(f"/sync/sessions/{uuid.uuid4()}/cancel")).status_code == 404


@pytest.mark.asyncio
async def test_jobs_and_batch_status(authed_client: AsyncClient, mail_credential):
    data = (await authed_client.post("/sync", json={"service": "gmail"})).json()

    jobs = (await authed_client.get("/jobs")).json()
    assert len(jobs) == 1
    assert jobs[0]["kind"] == "fetch"
    assert jobs[0]["status"] == "queued"

    batch = await authed_client.get(f"/jobs/batches/{data['batchId']}")
    assert batch.status_code == 200
    assert batch.json()["status"] == "queued"

    job = await authed_client.get(f"/jobs/{jobs[0]['id']}")
    assert job.status_code == 200

    # Only failed jobs can be retried
    retry = await authed_client.post(f"/jobs/{jobs[0]['id']}/retry")
    assert retry.status_code == 409

    stats = (await authed_client.get("/jobs/stats")).json()
    assert stats["queued"] == 1
    assert stats["completed"] == 0


@pytest.mark.asyncio
async def test_unknown_job_and_batch(authed_client: AsyncClient):
    assert (await authed_client.get(f"/jobs/{uuid.uuid4()}")).status_code == 404
    assert (await authed_client.get(f"/jobs/batches/{uuid.uuid4()}")).status_code == 404
    assert (await authed_client.post(f"/jobs/{uuid.uuid4()}/retry")).status_code == 404


def _pending_contact(db, user):
    return approval_service.submit_suggestion(
        db,
        user.id,
        uuid.uuid4(),
        Suggestion(
            artifact_type=ArtifactType.CONTACT,
            dedup_key="contact:grace@example.com",
            confidence=0.6,
            data={"email": "grace@example.com", "name": "", "source": "mail"},
        ),
    )


@pytest.mark.asyncio
async def test_list_and_approve(authed_client: AsyncClient, db, test_user):
    pending = _pending_contact(db, test_user)
    approval_id = str(pending.approval.id)

    listed = (await authed_client.get("/approvals")).json()
    assert [a["id"] for a in listed] == [approval_id]
    assert listed[0]["artifactType"] == "contact"

    response = await authed_client.post(
        f"/approvals/{approval_id}/approve", json={"edits": {"displayName": "Grace Hopper"}}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["artifactType"] == "contact"
    assert body["contact"]["displayName"] == "Grace Hopper"
    assert body["contact"]["status"] == "active"

    assert (await authed_client.post(f"/approvals/{approval_id}/approve")).status_code == 404


@pytest.mark.asyncio
async def test_reject(authed_client: AsyncClient, db, test_user):
    pending = _pending_contact(db, test_user)

    response = await authed_client.post(
        f"/approvals/{pending.approval.id}/reject", json={"deleteAssociated": True}
    )

    assert response.status_code == 200
    assert response.json()["deletedEntities"] == 1
    assert (await authed_client.post(f"/approvals/{uuid.uuid4()}/reject")).status_code == 404


@pytest.mark.asyncio
async def test_store_list_and_disconnect_integration(authed_client: AsyncClient):
    stored = await authed_client.post(
        "/integrations/calendar/tokens",
        json={"accessToken": "a1", "refreshToken": "r1", "expiresIn": 3600, "accountEmail": "me@example.com"},
    )
    assert stored.status_code == 200
    assert stored.json()["connected"] is True
    assert "accessToken" not in stored.json()

    listed = (await authed_client.get("/integrations")).json()
    assert [i["provider"] for i in listed["integrations"]] == ["calendar"]

    assert (await authed_client.delete("/integrations/calendar")).status_code == 200
    assert (await authed_client.delete("/integrations/calendar")).status_code == 404


@pytest.mark.asyncio
async def test_reconnect_required_surfaces_on_trigger(authed_client: AsyncClient, db, test_user):
    from omnisync.db.enums import CredentialStatus

    make_credential(db, test_user, Provider.MAIL, status=CredentialStatus.DISCONNECTED)

    response = await authed_client.post("/sync", json={"service": "gmail"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "reconnect_required"


@pytest.mark.asyncio
async def test_connect_requires_client_id(authed_client: AsyncClient, monkeypatch):
    from omnisync.core.config import settings

    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "")
    response = await authed_client.get("/integrations/mail/connect")

    assert response.status_code == 503


@pytest.mark.asyncio
async def test_connect_returns_auth_url_and_state_cookie(authed_client: AsyncClient, monkeypatch):
    from omnisync.core.config import settings

    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-id")
    response = await authed_client.get("/integrations/mail/connect")

    assert response.status_code == 200
    query = parse_qs(urlparse(response.json()["auth_url"]).query)
    assert query["client_id"] == ["client-id"]
    assert query["access_type"] == ["offline"]
    assert "state" in query
    assert "integration_oauth_state_mail" in response.headers.get("set-cookie", "")


@pytest.mark.asyncio
async def test_callback_requires_state_cookie(authed_client: AsyncClient):
    response = await authed_client.get(
        "/integrations/mail/callback",
        params={"code": "dummy", "state": "dummy"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert "error=invalid_state" in response.headers["location"]


@pytest.mark.asyncio
async def test_callback_stores_credential(authed_client: AsyncClient, db, test_user, monkeypatch):
    from omnisync.core.security import create_oauth_state_token
    from omnisync.services import oauth_service

    async def fake_exchange_code(code: str, redirect_uri: str):
        return {"access_token": "a1", "refresh_token": "r1", "expires_in": 3600, "scope": "gmail"}

    async def fake_user_info(access_token: str):
        return {"email": "me@example.com"}

    monkeypatch.setattr(oauth_service, "exchange_code", fake_exchange_code)
    monkeypatch.setattr(oauth_service, "get_google_user_info", fake_user_info)
    authed_client.cookies.set(
        "integration_oauth_state_mail",
        create_oauth_state_token(test_user.id, "mail", "state-123"),
    )

    response = await authed_client.get(
        "/integrations/mail/callback",
        params={"code": "auth-code", "state": "state-123"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert "success=mail" in response.headers["location"]
    credential = oauth_service.get_credential(db, test_user.id, Provider.MAIL)
    assert credential.account_email == "me@example.com"
    assert credential.is_connected
