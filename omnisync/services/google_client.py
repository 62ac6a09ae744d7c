"""Google Mail and Calendar API clients.

Thin httpx wrappers returning provider records as :class:`RawRecord`. Tokens
are passed per call so the fetch engine can swap in a refreshed token
mid-batch.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from omnisync.core.config import settings
from omnisync.core.errors import PayloadError
from omnisync.db.enums import Provider

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3/calendars/primary"

# Gmail caps maxResults at 500; calendar at 2500
GMAIL_PAGE_SIZE = 100
CALENDAR_PAGE_SIZE = 250


@dataclass
class FetchWindow:
    """Half-open time range ``[start, end)`` of provider changes to import."""

    start: datetime
    end: datetime


@dataclass
class RawRecord:
    """One provider record as fetched."""

    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime | None = None


def _parse_rfc3339(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ProviderClient(ABC):
    """Abstract provider client."""

    provider: Provider

    def __init__(self, timeout: float | None = None):
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    @abstractmethod
    async def list_ids(self, access_token: str, window: FetchWindow, limit: int) -> list[str]:
        """Return ids of records changed inside the window, at most ``limit``."""
        pass

    @abstractmethod
    async def get_record(self, access_token: str, source_id: str) -> RawRecord:
        """Fetch one record. Raises PayloadError if it cannot be parsed."""
        pass

    async def _get(self, access_token: str, url: str, params: dict | None = None) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            try:
                return response.json()
            except ValueError as e:
                raise PayloadError(f"Provider returned invalid JSON: {e}")


class GoogleMailClient(ProviderClient):
    """Gmail ``messages.list`` + ``messages.get``."""

    provider = Provider.MAIL

    @staticmethod
    def build_query(window: FetchWindow) -> str:
        # Gmail search accepts epoch seconds for after/before
        return f"after:{int(window.start.timestamp())} before:{int(window.end.timestamp())}"

    async def list_ids(self, access_token: str, window: FetchWindow, limit: int) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None
        query = self.build_query(window)
        while len(ids) < limit:
            params: dict[str, Any] = {"q": query, "maxResults": min(GMAIL_PAGE_SIZE, limit - len(ids))}
            if page_token:
                params["pageToken"] = page_token
            data = await self._get(access_token, f"{GMAIL_API_BASE}/messages", params)
            ids.extend(m["id"] for m in data.get("messages", []) if m.get("id"))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return ids[:limit]

    async def get_record(self, access_token: str, source_id: str) -> RawRecord:
        data = await self._get(
            access_token,
            f"{GMAIL_API_BASE}/messages/{source_id}",
            {"format": "full"},
        )
        if data.get("id") != source_id:
            raise PayloadError(f"Gmail message {source_id} has no matching id")
        occurred_at = None
        internal_date = data.get("internalDate")
        if internal_date:
            try:
                occurred_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
            except (TypeError, ValueError):
                raise PayloadError(f"Gmail message {source_id} has invalid internalDate")
        return RawRecord(source_id=source_id, payload=data, occurred_at=occurred_at)


class GoogleCalendarClient(ProviderClient):
    """Calendar ``events.list`` with ``updatedMin``."""

    provider = Provider.CALENDAR

    def __init__(self, timeout: float | None = None):
        super().__init__(timeout)
        self._listed: dict[str, dict] = {}

    async def list_ids(self, access_token: str, window: FetchWindow, limit: int) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < limit:
            params: dict[str, Any] = {
                "updatedMin": window.start.isoformat(),
                "maxResults": min(CALENDAR_PAGE_SIZE, limit - len(ids)),
                "singleEvents": "true",
                "showDeleted": "false",
            }
            if page_token:
                params["pageToken"] = page_token
            data = await self._get(access_token, f"{CALENDAR_API_BASE}/events", params)
            for item in data.get("items", []):
                event_id = item.get("id")
                if not event_id:
                    continue
                # events.list already returns full resources
                self._listed[event_id] = item
                ids.append(event_id)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return ids[:limit]

    async def get_record(self, access_token: str, source_id: str) -> RawRecord:
        data = self._listed.pop(source_id, None)
        if data is None:
            data = await self._get(access_token, f"{CALENDAR_API_BASE}/events/{source_id}")
        start = data.get("start") or {}
        occurred_at = _parse_rfc3339(start.get("dateTime"))
        if occurred_at is None and start.get("date"):
            occurred_at = _parse_rfc3339(f"{start['date']}T00:00:00+00:00")
        if occurred_at is None:
            raise PayloadError(f"Calendar event {source_id} has no start time")
        return RawRecord(source_id=source_id, payload=data, occurred_at=occurred_at)


PROVIDER_CLIENTS: dict[Provider, type[ProviderClient]] = {
    Provider.MAIL: GoogleMailClient,
    Provider.CALENDAR: GoogleCalendarClient,
}


def get_provider_client(provider: Provider) -> ProviderClient:
    """Build a fresh client for one fetch run."""
    return PROVIDER_CLIENTS[provider]()
