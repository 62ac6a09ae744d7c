"""Incremental fetch engine.

Computes the window of provider changes to import, pulls records through
the provider client and lands them in ``raw_events``. The import cursor only
moves once a batch fetched its whole window.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from omnisync.core.config import settings
from omnisync.core.errors import PayloadError, TransientSyncError, classify_error
from omnisync.core.structured_logging import build_log_context
from omnisync.db.enums import Provider
from omnisync.db.models import ImportCursor
from omnisync.db.types import utcnow
from omnisync.services import oauth_service, raw_event_service
from omnisync.services.google_client import FetchWindow, ProviderClient, RawRecord

logger = logging.getLogger(__name__)


@dataclass
class RecordFailure:
    source_id: str
    code: str
    message: str


@dataclass
class FetchResult:
    records: list[RawRecord] = field(default_factory=list)
    failures: list[RecordFailure] = field(default_factory=list)
    listed: int = 0


def get_cursor(db: Session, user_id: UUID, provider: Provider) -> ImportCursor | None:
    return (
        db.query(ImportCursor)
        .filter(ImportCursor.user_id == user_id, ImportCursor.provider == provider.value)
        .first()
    )


# Session preference naming the first-sync lookback per provider
LOOKBACK_PREFERENCES = {
    Provider.MAIL: "gmailTimeRangeDays",
    Provider.CALENDAR: "calendarTimeWindowDays",
}


def lookback_days(provider: Provider, preferences: dict | None = None) -> int:
    """First-sync lookback: the provider's preference if valid, capped at MAX_LOOKBACK_DAYS."""
    value = (preferences or {}).get(LOOKBACK_PREFERENCES[provider])
    if isinstance(value, bool):
        value = None
    try:
        days = int(value) if value is not None else 0
    except (TypeError, ValueError):
        days = 0
    if days <= 0:
        days = settings.INITIAL_LOOKBACK_DAYS
    return min(days, settings.MAX_LOOKBACK_DAYS)


def compute_window(
    db: Session,
    user_id: UUID,
    provider: Provider,
    overlap_hours: int | None = None,
    incremental: bool = True,
    now: datetime | None = None,
    preferences: dict | None = None,
) -> FetchWindow:
    """
    Window for the next fetch.

    Incremental with a cursor: ``[last_synced_at - overlap, now]``.
    First sync or full resync: ``[now - lookback, now]`` where the lookback
    comes from the session preferences or ``INITIAL_LOOKBACK_DAYS``.
    """
    end = now or utcnow()
    overlap = overlap_hours if overlap_hours and overlap_hours > 0 else settings.DEFAULT_OVERLAP_HOURS
    overlap = max(overlap, 1)

    cursor = get_cursor(db, user_id, provider) if incremental else None
    if cursor is None:
        start = end - timedelta(days=lookback_days(provider, preferences))
    else:
        start = cursor.last_synced_at - timedelta(hours=overlap)
    return FetchWindow(start=min(start, end), end=end)


def advance_cursor(
    db: Session,
    user_id: UUID,
    provider: Provider,
    synced_at: datetime,
    batch_id: UUID | None = None,
) -> ImportCursor:
    """Move the high-water mark forward. Never moves it back."""
    cursor = get_cursor(db, user_id, provider)
    now = utcnow()
    if cursor is None:
        cursor = ImportCursor(
            user_id=user_id,
            provider=provider.value,
            last_synced_at=synced_at,
            last_batch_id=batch_id,
            updated_at=now,
        )
        db.add(cursor)
    elif synced_at > cursor.last_synced_at:
        cursor.last_synced_at = synced_at
        cursor.last_batch_id = batch_id
        cursor.updated_at = now
    db.commit()
    db.refresh(cursor)
    return cursor


TokenSource = Callable[[bool], Awaitable[str]]


def vault_token_source(db: Session, user_id: UUID, provider: Provider) -> TokenSource:
    """Token source backed by the vault; ``force`` refreshes after a 401."""

    async def get_token(force: bool = False) -> str:
        return await oauth_service.get_access_token(db, user_id, provider, force_refresh=force)

    return get_token


async def _call_with_token(get_token: TokenSource, call):
    """Run a provider call, refreshing the token once if it is rejected."""
    token = await get_token(False)
    try:
        return await call(token)
    except httpx.HTTPStatusError as e:
        if e.response.status_code != 401:
            raise
    token = await get_token(True)
    return await call(token)


async def fetch_delta(
    client: ProviderClient,
    get_token: TokenSource,
    window: FetchWindow,
    limit: int | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> FetchResult:
    """
    Pull every record changed inside the window.

    Listing failures propagate. Per-record transient and payload errors are
    collected and the fetch continues. The token is re-read before each
    request so an expiry mid-batch is refreshed transparently.
    """
    max_records = limit or settings.MAX_RECORDS_PER_SYNC
    result = FetchResult()

    ids = await _call_with_token(
        get_token, lambda token: client.list_ids(token, window, max_records)
    )
    result.listed = len(ids)

    for source_id in ids:
        if should_stop and should_stop():
            break
        try:
            record = await _call_with_token(
                get_token, lambda token, sid=source_id: client.get_record(token, sid)
            )
        except Exception as e:
            error = classify_error(e)
            if error is e:
                if not isinstance(error, (TransientSyncError, PayloadError)):
                    raise
            elif not isinstance(error, (TransientSyncError, PayloadError)):
                raise error from e
            result.failures.append(RecordFailure(source_id, error.code, str(error)))
            continue
        result.records.append(record)
    return result


@dataclass
class FetchOutcome:
    window: FetchWindow
    imported: int
    skipped: int
    failed: int
    listed: int
    cursor_advanced: bool
    failures: list[RecordFailure] = field(default_factory=list)
    window_complete: bool = False


async def run_fetch(
    db: Session,
    client: ProviderClient,
    user_id: UUID,
    provider: Provider,
    batch_id: UUID,
    window: FetchWindow,
    should_stop: Callable[[], bool] | None = None,
    advance: bool = True,
) -> FetchOutcome:
    """
    Fetch a window and upsert raw events.

    The cursor moves only when the whole window landed. Pass ``advance=False``
    to leave that to the caller (``window_complete`` says whether it may).
    """
    log_context = build_log_context(user_id=user_id, batch_id=batch_id, provider=provider.value)
    fetched = await fetch_delta(
        client,
        vault_token_source(db, user_id, provider),
        window,
        should_stop=should_stop,
    )
    counts = raw_event_service.upsert_raw_events(db, user_id, provider, batch_id, fetched.records)

    stopped_early = len(fetched.records) + len(fetched.failures) < fetched.listed
    window_complete = not fetched.failures and not stopped_early
    cursor_advanced = window_complete and advance
    if cursor_advanced:
        advance_cursor(db, user_id, provider, window.end, batch_id=batch_id)

    logger.info(
        "Fetch finished listed=%d imported=%d skipped=%d failed=%d",
        fetched.listed,
        counts.imported,
        counts.skipped,
        len(fetched.failures),
        extra=log_context,
    )
    return FetchOutcome(
        window=window,
        imported=counts.imported,
        skipped=counts.skipped,
        failed=len(fetched.failures),
        listed=fetched.listed,
        cursor_advanced=cursor_advanced,
        failures=fetched.failures,
        window_complete=window_complete,
    )
