"""Token vault for per-user Google credentials.

Stores Fernet-encrypted tokens per (user, provider) and hands out a
credential that is valid for at least ``TOKEN_REFRESH_MARGIN_SECONDS``.
An ``invalid_grant`` refresh failure disconnects the credential and stops
every open batch that depends on it.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.encryption import decrypt_token, encrypt_token, hash_identifier
from omnisync.core.errors import (
    FatalSyncError,
    ReconnectRequiredError,
    TransientSyncError,
    classify_error,
)
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import (
    ACTIVE_SYNC_STATUSES,
    PROVIDER_SERVICE,
    CredentialStatus,
    FailureReason,
    Provider,
    SyncStatus,
)
from omnisync.db.models import Credential, SyncSession
from omnisync.db.types import utcnow
from omnisync.services import job_service, sync_session_service

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

PROVIDER_SCOPES: dict[Provider, list[str]] = {
    Provider.MAIL: [
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
    ],
    Provider.CALENDAR: [
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
    ],
}

# Polling interval while another runner holds the refresh claim
REFRESH_WAIT_INTERVAL_SECONDS = 0.25

_refresh_locks: dict[tuple[uuid.UUID, str], asyncio.Lock] = {}


def _get_refresh_lock(user_id: uuid.UUID, provider: Provider) -> asyncio.Lock:
    key = (user_id, provider.value)
    lock = _refresh_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[key] = lock
    return lock


def _needs_refresh(credential: Credential) -> bool:
    if credential.expires_at is None:
        return False
    margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
    return credential.expires_at <= utcnow() + margin


# ============================================================================
# Credential CRUD
# ============================================================================


def get_credential(db: Session, user_id: uuid.UUID, provider: Provider) -> Credential | None:
    """Get a user's credential for one provider."""
    return (
        db.query(Credential)
        .filter(Credential.user_id == user_id, Credential.provider == provider.value)
        .first()
    )


def get_user_credentials(db: Session, user_id: uuid.UUID) -> list[Credential]:
    """Get all credentials for a user."""
    return (
        db.query(Credential)
        .filter(Credential.user_id == user_id)
        .order_by(Credential.provider)
        .all()
    )


def store_credential(
    db: Session,
    user_id: uuid.UUID,
    provider: Provider,
    tokens: dict[str, Any],
) -> Credential:
    """
    Save or replace a user's tokens and mark the credential connected.

    ``tokens`` follows Google's token response: ``access_token``, optional
    ``refresh_token``, ``expires_in`` (seconds) or ``expires_at``, ``scope``
    (space separated) and an optional ``account_email``.
    """
    access_token = tokens.get("access_token")
    if not access_token:
        raise ValueError("access_token is required")

    expires_at = tokens.get("expires_at")
    if expires_at is None and tokens.get("expires_in"):
        expires_at = utcnow() + timedelta(seconds=int(tokens["expires_in"]))
    scope = tokens.get("scope") or tokens.get("scopes") or []
    scopes = scope.split() if isinstance(scope, str) else list(scope)

    credential = get_credential(db, user_id, provider)
    now = utcnow()
    if credential:
        credential.access_token_encrypted = encrypt_token(access_token)
        if tokens.get("refresh_token"):
            credential.refresh_token_encrypted = encrypt_token(tokens["refresh_token"])
        credential.expires_at = expires_at
        if scopes:
            credential.scopes = scopes
        if tokens.get("account_email"):
            credential.account_email = tokens["account_email"]
        credential.updated_at = now
    else:
        credential = Credential(
            user_id=user_id,
            provider=provider.value,
            access_token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(tokens["refresh_token"])
            if tokens.get("refresh_token")
            else None,
            expires_at=expires_at,
            scopes=scopes,
            account_email=tokens.get("account_email"),
            created_at=now,
            updated_at=now,
        )
        db.add(credential)

    # Reconnecting clears any earlier failure
    credential.status = CredentialStatus.CONNECTED.value
    credential.last_error = None
    credential.last_error_code = None
    credential.refresh_locked_until = None

    db.commit()
    db.refresh(credential)
    logger.info(
        "Credential stored account=%s",
        hash_identifier(credential.account_email or ""),
        extra=build_log_context(user_id=user_id, provider=provider.value),
    )
    return credential


def disconnect(db: Session, user_id: uuid.UUID, provider: Provider) -> bool:
    """Delete a user's credential. Returns False if none existed."""
    credential = get_credential(db, user_id, provider)
    if not credential:
        return False
    db.delete(credential)
    db.commit()
    logger.info(
        "Credential removed",
        extra=build_log_context(user_id=user_id, provider=provider.value),
    )
    return True


def mark_reconnect_required(
    db: Session,
    credential: Credential,
    message: str,
) -> list[uuid.UUID]:
    """
    Disconnect a credential whose grant is gone.

    Fails every active session of the matching service and all open jobs of
    their batches. Returns the ids of the sessions that were failed.
    """
    now = utcnow()
    credential.status = CredentialStatus.DISCONNECTED.value
    credential.last_error = message[:500]
    credential.last_error_code = FailureReason.RECONNECT_REQUIRED.value
    credential.refresh_locked_until = None
    credential.updated_at = now
    db.commit()

    service = PROVIDER_SERVICE[Provider(credential.provider)]
    details = sync_session_service.build_error_details(
        stage="auth",
        reason=FailureReason.RECONNECT_REQUIRED,
        code=ReconnectRequiredError.code,
        message=message,
    )
    failed_sessions = []
    batch_ids = []
    for session in (
        db.query(SyncSession)
        .filter(
            SyncSession.user_id == credential.user_id,
            SyncSession.service == service.value,
            SyncSession.status.in_(ACTIVE_SYNC_STATUSES),
        )
        .all()
    ):
        batch_ids.append(session.batch_id)
        sync_session_service.finish(db, session.id, SyncStatus.FAILED, error_details=details)
        failed_sessions.append(session.id)

    job_service.fail_open_jobs(
        db,
        batch_ids,
        error=message,
        error_code=ReconnectRequiredError.code,
    )
    # Batches whose session already closed can still hold queued jobs
    job_service.fail_open_jobs_for_provider(
        db,
        credential.user_id,
        service.value,
        error=message,
        error_code=ReconnectRequiredError.code,
    )
    logger.warning(
        "Credential disconnected, %d sessions failed",
        len(failed_sessions),
        extra=build_log_context(user_id=credential.user_id, provider=credential.provider),
    )
    return failed_sessions


# ============================================================================
# Google OAuth
# ============================================================================


def get_auth_url(provider: Provider, redirect_uri: str, state: str) -> str:
    """Generate Google OAuth consent URL for one provider."""
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(PROVIDER_SCOPES[provider]),
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def get_redirect_uri(provider: Provider) -> str:
    if provider == Provider.MAIL:
        return settings.GMAIL_REDIRECT_URI
    return settings.CALENDAR_REDIRECT_URI


async def exchange_code(code: str, redirect_uri: str) -> dict[str, Any]:
    """Exchange authorization code for tokens."""
    async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
        )
        response.raise_for_status()
        return response.json()


async def get_google_user_info(access_token: str) -> dict[str, Any]:
    """Get user info from Google."""
    async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
        response = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        response.raise_for_status()
        return response.json()


def _error_code_from_response(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict):
        return str(data.get("error") or "")
    return ""


async def refresh_google_token(refresh_token: str) -> dict[str, Any]:
    """
    Exchange a refresh token for a new access token.

    Raises:
        ReconnectRequiredError: the grant is revoked or expired
        TransientSyncError: network error, timeout, 429 or 5xx
        FatalSyncError: client misconfiguration
    """
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
    except (httpx.TimeoutException, httpx.TransportError) as e:
        raise classify_error(e) from e

    if response.status_code in (400, 401):
        error_code = _error_code_from_response(response)
        if error_code == "invalid_grant":
            raise ReconnectRequiredError("Google rejected the refresh token (invalid_grant)")
        raise FatalSyncError(
            f"Google token endpoint returned {response.status_code} ({error_code or 'unknown'})",
            code="oauth_config_error",
        )
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientSyncError(f"Google token endpoint returned {response.status_code}")
    response.raise_for_status()
    return response.json()


# ============================================================================
# Vault
# ============================================================================


def _claim_refresh(db: Session, credential_id: uuid.UUID) -> bool:
    """Take the cross-process refresh claim. False if another process holds it."""
    now = utcnow()
    result = db.execute(
        update(Credential)
        .where(
            Credential.id == credential_id,
            Credential.status == CredentialStatus.CONNECTED.value,
            or_(
                Credential.refresh_locked_until.is_(None),
                Credential.refresh_locked_until < now,
            ),
        )
        .values(refresh_locked_until=now + timedelta(seconds=settings.TOKEN_REFRESH_LOCK_SECONDS))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _release_refresh(db: Session, credential: Credential) -> None:
    credential.refresh_locked_until = None
    db.commit()


def _raise_if_disconnected(credential: Credential) -> None:
    if not credential.is_connected:
        raise ReconnectRequiredError(
            credential.last_error or f"{credential.provider} credential is disconnected"
        )


async def _wait_for_refresh(db: Session, credential: Credential, seen_token: str) -> Credential:
    """Poll until the process holding the claim finishes refreshing."""
    deadline = utcnow() + timedelta(seconds=settings.TOKEN_REFRESH_LOCK_SECONDS)
    while utcnow() < deadline:
        await asyncio.sleep(REFRESH_WAIT_INTERVAL_SECONDS)
        db.refresh(credential)
        _raise_if_disconnected(credential)
        if credential.access_token_encrypted != seen_token:
            return credential
        locked_until = credential.refresh_locked_until
        if locked_until is None or locked_until < utcnow():
            break
    raise TransientSyncError("Timed out waiting for a concurrent token refresh", code="timeout")


def _apply_refreshed_tokens(db: Session, credential: Credential, tokens: dict[str, Any]) -> None:
    now = utcnow()
    credential.access_token_encrypted = encrypt_token(tokens["access_token"])
    if tokens.get("refresh_token"):
        credential.refresh_token_encrypted = encrypt_token(tokens["refresh_token"])
    if tokens.get("expires_in"):
        credential.expires_at = now + timedelta(seconds=int(tokens["expires_in"]))
    if tokens.get("scope"):
        credential.scopes = tokens["scope"].split()
    credential.last_refreshed_at = now
    credential.last_error = None
    credential.last_error_code = None
    credential.refresh_locked_until = None
    credential.updated_at = now
    db.commit()
    db.refresh(credential)


async def _refresh(db: Session, credential: Credential) -> Credential:
    log_context = build_log_context(user_id=credential.user_id, provider=credential.provider)
    if not credential.refresh_token_encrypted:
        mark_reconnect_required(db, credential, "No refresh token stored for this account")
        raise ReconnectRequiredError("No refresh token stored for this account")

    try:
        tokens = await refresh_google_token(decrypt_token(credential.refresh_token_encrypted))
    except ReconnectRequiredError as e:
        mark_reconnect_required(db, credential, str(e))
        raise
    except Exception as e:
        # The refresh claim is released on every failure
        error = classify_error(e)
        credential.last_error = str(error)[:500]
        credential.last_error_code = error.code
        _release_refresh(db, credential)
        logger.warning("Token refresh failed code=%s", error.code, extra=log_context)
        if error is e:
            raise
        raise error from e

    if not tokens.get("access_token"):
        _release_refresh(db, credential)
        raise TransientSyncError("Token endpoint returned no access_token")

    _apply_refreshed_tokens(db, credential, tokens)
    logger.info("Token refreshed", extra=log_context)
    return credential


async def get_valid_credential(
    db: Session,
    user_id: uuid.UUID,
    provider: Provider,
    force_refresh: bool = False,
) -> Credential:
    """
    Return a connected credential valid for at least the refresh margin.

    ``force_refresh`` refreshes even if the token looks fresh, used after the
    provider rejected it with a 401. Concurrent callers share one refresh.

    Raises:
        ReconnectRequiredError: missing, disconnected or revoked credential
        TransientSyncError: refresh could not complete right now
    """
    credential = get_credential(db, user_id, provider)
    if not credential:
        raise ReconnectRequiredError(f"{provider.value} is not connected")
    _raise_if_disconnected(credential)
    if not force_refresh and not _needs_refresh(credential):
        return credential

    seen_token = credential.access_token_encrypted
    async with _get_refresh_lock(user_id, provider):
        db.refresh(credential)
        _raise_if_disconnected(credential)
        if credential.access_token_encrypted != seen_token:
            # Refreshed by a coroutine that held the lock before us
            return credential
        if not force_refresh and not _needs_refresh(credential):
            return credential

        if not _claim_refresh(db, credential.id):
            return await _wait_for_refresh(db, credential, seen_token)
        db.refresh(credential)
        return await _refresh(db, credential)


async def get_access_token(
    db: Session,
    user_id: uuid.UUID,
    provider: Provider,
    force_refresh: bool = False,
) -> str:
    """Decrypted access token from :func:`get_valid_credential`."""
    credential = await get_valid_credential(db, user_id, provider, force_refresh=force_refresh)
    return decrypt_token(credential.access_token_encrypted)

