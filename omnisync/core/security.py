"""Security utilities for JWT session tokens and OAuth state."""

import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from omnisync.core.config import settings


# =============================================================================
# Session Token (JWT in cookie)
# =============================================================================

def create_session_token(user_id: UUID, token_version: int) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET).
    """
    payload = {
        "sub": str(user_id),
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore


# =============================================================================
# OAuth State
# =============================================================================

def generate_oauth_state() -> str:
    """Generate cryptographically random state (32 bytes, URL-safe base64)."""
    return secrets.token_urlsafe(32)


def create_oauth_state_token(user_id: UUID, provider: str, state: str) -> str:
    """Sign the OAuth state so the callback can recover the user and provider."""
    payload = {
        "sub": str(user_id),
        "provider": provider,
        "state": state,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def verify_oauth_state_token(token: str, state: str) -> dict:
    """Verify a signed OAuth state and return its payload."""
    payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    if not secrets.compare_digest(payload.get("state", ""), state):
        raise ValueError("OAuth state mismatch")
    return payload
