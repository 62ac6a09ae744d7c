"""Pydantic schemas for provider credentials."""

from datetime import datetime

from pydantic import Field

from omnisync.schemas.common import CamelModel


class CredentialRead(CamelModel):
    """Credential status; tokens are never returned."""

    provider: str
    status: str
    connected: bool
    account_email: str | None = None
    expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    last_error_code: str | None = None
    last_refreshed_at: datetime | None = None


class CredentialListResponse(CamelModel):
    integrations: list[CredentialRead]


class StoreTokensRequest(CamelModel):
    """Tokens obtained by a client-side OAuth flow."""

    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, ge=0)
    scope: str | None = None
    account_email: str | None = None
