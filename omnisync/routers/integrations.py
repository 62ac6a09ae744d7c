"""Integrations router.

Per-user Google OAuth connections for mail and calendar. Each user connects
their own accounts; tokens are encrypted at rest by the token vault.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.deps import get_current_user, get_db
from omnisync.core.security import (
    create_oauth_state_token,
    generate_oauth_state,
    verify_oauth_state_token,
)
from omnisync.db.enums import Provider
from omnisync.db.models import Credential
from omnisync.schemas.integration import (
    CredentialListResponse,
    CredentialRead,
    StoreTokensRequest,
)
from omnisync.services import oauth_service

router = APIRouter(prefix="/integrations", tags=["Integrations"])
logger = logging.getLogger(__name__)

OAUTH_STATE_MAX_AGE = 300  # 5 minutes
OAUTH_STATE_COOKIE_PREFIX = "integration_oauth_state_"
OAUTH_STATE_COOKIE_PATH = "/integrations"


def _oauth_cookie_name(provider: Provider) -> str:
    return f"{OAUTH_STATE_COOKIE_PREFIX}{provider.value}"


def _to_read(credential: Credential) -> CredentialRead:
    return CredentialRead(
        provider=credential.provider,
        status=credential.status,
        connected=credential.is_connected,
        account_email=credential.account_email,
        expires_at=credential.expires_at,
        scopes=credential.scopes or [],
        last_error_code=credential.last_error_code,
        last_refreshed_at=credential.last_refreshed_at,
    )


@router.get("", response_model=CredentialListResponse)
def list_integrations(
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """List the user's provider credentials."""
    credentials = oauth_service.get_user_credentials(db, user.id)
    return CredentialListResponse(integrations=[_to_read(c) for c in credentials])


@router.post("/{provider}/tokens", response_model=CredentialRead)
def store_tokens(
    provider: Provider,
    body: StoreTokensRequest,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
):
    """Store tokens obtained elsewhere and (re)connect the provider."""
    credential = oauth_service.store_credential(
        db, user.id, provider, body.model_dump(exclude_none=True)
    )
    return _to_read(credential)


@router.delete("/{provider}")
def disconnect_integration(
    provider: Provider,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
) -> dict:
    """Disconnect a provider and delete its tokens."""
    if not oauth_service.disconnect(db, user.id, provider):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Integration '{provider.value}' not found",
        )
    return {"success": True, "message": f"{provider.value} disconnected"}


@router.get("/{provider}/connect")
def connect(
    provider: Provider,
    response: Response,
    user=Depends(get_current_user),
) -> dict[str, str]:
    """Get the Google OAuth consent URL.

    Frontend should redirect the user to this URL.
    """
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Google integration not configured. Set GOOGLE_CLIENT_ID.",
        )

    state = generate_oauth_state()
    response.set_cookie(
        key=_oauth_cookie_name(provider),
        value=create_oauth_state_token(user.id, provider.value, state),
        max_age=OAUTH_STATE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        path=OAUTH_STATE_COOKIE_PATH,
    )
    auth_url = oauth_service.get_auth_url(provider, oauth_service.get_redirect_uri(provider), state)
    return {"auth_url": auth_url}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: Provider,
    request: Request,
    code: str,
    state: str,
    db: Session = Depends(get_db),
    user=Depends(get_current_user),
) -> RedirectResponse:
    """Handle the Google OAuth callback."""
    cookie_name = _oauth_cookie_name(provider)
    error_response = RedirectResponse(
        f"{settings.FRONTEND_URL}/settings/integrations?error=invalid_state",
        status_code=302,
    )
    error_response.delete_cookie(cookie_name, path=OAUTH_STATE_COOKIE_PATH)

    state_cookie = request.cookies.get(cookie_name)
    if not state_cookie:
        return error_response
    try:
        payload = verify_oauth_state_token(state_cookie, state)
    except Exception:
        return error_response
    if payload.get("sub") != str(user.id) or payload.get("provider") != provider.value:
        return error_response

    try:
        tokens = await oauth_service.exchange_code(code, oauth_service.get_redirect_uri(provider))
        user_info = await oauth_service.get_google_user_info(tokens["access_token"])
        oauth_service.store_credential(
            db,
            user.id,
            provider,
            {**tokens, "account_email": user_info.get("email")},
        )
    except Exception as e:
        logger.warning("OAuth callback failed for %s: %s", provider.value, type(e).__name__)
        failed = RedirectResponse(
            f"{settings.FRONTEND_URL}/settings/integrations?error={provider.value}_failed",
            status_code=302,
        )
        failed.delete_cookie(cookie_name, path=OAUTH_STATE_COOKIE_PATH)
        return failed

    success = RedirectResponse(
        f"{settings.FRONTEND_URL}/settings/integrations?success={provider.value}",
        status_code=302,
    )
    success.delete_cookie(cookie_name, path=OAUTH_STATE_COOKIE_PATH)
    return success
