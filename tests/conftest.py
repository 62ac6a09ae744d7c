"""
Test configuration and fixtures.

Provides:
- SQLite database rebuilt for every test
- Users with connected Google credentials
- Fake provider clients standing in for the Gmail / Calendar APIs
- HTTPX AsyncClient with a session cookie
"""
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

from cryptography.fernet import Fernet

# Settings are read at import time
_db_dir = tempfile.mkdtemp(prefix="omnisync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ["TESTING"] = "1"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["REDIS_URL"] = ""
os.environ["OPENAI_API_KEY"] = ""

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from omnisync.core.deps import COOKIE_NAME, get_db
from omnisync.core.encryption import encrypt_token
from omnisync.core.errors import PayloadError
from omnisync.core.security import create_session_token
from omnisync.db.base import Base
from omnisync.db.enums import CredentialStatus, Provider
from omnisync.db.models import Credential, User
from omnisync.db.session import SessionLocal, engine
from omnisync.main import app
from omnisync.services import google_client
from omnisync.services.google_client import FetchWindow, ProviderClient, RawRecord


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _schema() -> Generator[None, None, None]:
    """Fresh tables for every test; services commit freely."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def test_user(db: Session) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"owner-{uuid.uuid4().hex[:8]}@practice.test",
        display_name="Test Practitioner",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_credential(
    db: Session,
    user: User,
    provider: Provider = Provider.MAIL,
    access_token: str = "access-token",
    refresh_token: str | None = "refresh-token",
    expires_in: timedelta = timedelta(hours=1),
    status: CredentialStatus = CredentialStatus.CONNECTED,
) -> Credential:
    now = datetime.now(timezone.utc)
    credential = Credential(
        user_id=user.id,
        provider=provider.value,
        access_token_encrypted=encrypt_token(access_token),
        refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else None,
        expires_at=now + expires_in,
        scopes=[],
        account_email=user.email,
        status=status.value,
        created_at=now,
        updated_at=now,
    )
    db.add(credential)
    db.commit()
    db.refresh(credential)
    return credential


@pytest.fixture(scope="function")
def mail_credential(db: Session, test_user: User) -> Credential:
    return make_credential(db, test_user, Provider.MAIL)


# =============================================================================
# Fake provider clients
# =============================================================================

def gmail_message(
    source_id: str,
    sender: str = "Ada Lovelace <ada@example.com>",
    to: str = "owner@practice.test",
    subject: str = "Hello",
    body: str = "",
    internal_date_ms: int = 1_700_000_000_000,
) -> dict:
    """Gmail ``messages.get`` resource with the fields the parser reads."""
    return {
        "id": source_id,
        "internalDate": str(internal_date_ms),
        "snippet": body[:100],
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": to},
                {"name": "Subject", "value": subject},
            ],
            "body": {},
        },
    }


@dataclass
class FakeProviderClient(ProviderClient):
    """In-memory provider: ``records`` maps id -> payload, ``errors`` id -> exception."""

    records: dict[str, dict] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    list_errors: list[Exception] = field(default_factory=list)
    rejected_tokens: set[str] = field(default_factory=set)
    provider: Provider = Provider.MAIL
    windows: list[FetchWindow] = field(default_factory=list)
    tokens_seen: list[str] = field(default_factory=list)

    def _check_token(self, access_token: str) -> None:
        self.tokens_seen.append(access_token)
        if access_token in self.rejected_tokens:
            request = httpx.Request("GET", "https://provider.test")
            raise httpx.HTTPStatusError(
                "401 Unauthorized",
                request=request,
                response=httpx.Response(401, request=request),
            )

    async def list_ids(self, access_token: str, window: FetchWindow, limit: int) -> list[str]:
        self._check_token(access_token)
        self.windows.append(window)
        if self.list_errors:
            raise self.list_errors.pop(0)
        return list(self.records)[:limit]

    async def get_record(self, access_token: str, source_id: str) -> RawRecord:
        self._check_token(access_token)
        if source_id in self.errors:
            raise self.errors[source_id]
        payload = self.records.get(source_id)
        if payload is None:
            raise PayloadError(f"{source_id} vanished")
        occurred_at = None
        if payload.get("internalDate"):
            occurred_at = datetime.fromtimestamp(int(payload["internalDate"]) / 1000, tz=timezone.utc)
        return RawRecord(source_id=source_id, payload=payload, occurred_at=occurred_at)


@pytest.fixture(scope="function")
def fake_mail(monkeypatch) -> FakeProviderClient:
    """Route every provider lookup to one in-memory mail client."""
    client = FakeProviderClient()
    monkeypatch.setattr(google_client, "get_provider_client", lambda provider: client)
    return client


# =============================================================================
# Auth + Client Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME


@pytest.fixture(scope="function")
def test_auth(test_user: User) -> TestAuth:
    token = create_session_token(user_id=test_user.id, token_version=test_user.token_version)
    return TestAuth(user=test_user, token=token)


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(db: Session, test_auth: TestAuth) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient carrying the session cookie."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={test_auth.cookie_name: test_auth.token},
    ) as c:
        yield c
    app.dependency_overrides.clear()
