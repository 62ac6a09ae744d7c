"""Normalization of raw provider records into interactions."""

import base64
import binascii
from datetime import datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from omnisync.core.errors import PayloadError
from omnisync.db.enums import InteractionKind, Provider
from omnisync.db.models import Interaction, RawEvent
from omnisync.db.types import utcnow

MAX_BODY_CHARS = 20000


def _header_map(headers: list[dict]) -> dict[str, str]:
    return {
        (h.get("name") or "").lower(): h.get("value") or ""
        for h in headers
        if isinstance(h, dict)
    }


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _plain_text(part: dict) -> str:
    """Depth-first search for the first text/plain body."""
    if part.get("mimeType") == "text/plain":
        data = (part.get("body") or {}).get("data")
        if data:
            return _decode_body(data)
    for child in part.get("parts") or []:
        if isinstance(child, dict):
            text = _plain_text(child)
            if text:
                return text
    return ""


def _participants(headers: dict[str, str]) -> list[dict[str, str]]:
    participants = []
    for role in ("from", "to", "cc"):
        value = headers.get(role)
        if not value:
            continue
        for name, email in getaddresses([value]):
            if email:
                participants.append({"email": email.lower(), "name": name, "role": role})
    return participants


def parse_gmail_message(payload: dict[str, Any]) -> dict[str, Any]:
    """Extract the interaction fields of a Gmail ``messages.get`` resource."""
    message_payload = payload.get("payload")
    if not isinstance(message_payload, dict) or not isinstance(message_payload.get("headers"), list):
        raise PayloadError("Gmail message has no headers")
    headers = _header_map(message_payload["headers"])
    if not headers.get("from"):
        raise PayloadError("Gmail message has no From header")

    occurred_at: datetime | None = None
    if headers.get("date"):
        try:
            occurred_at = parsedate_to_datetime(headers["date"])
        except (TypeError, ValueError):
            occurred_at = None

    body = _plain_text(message_payload) or payload.get("snippet") or ""
    return {
        "kind": InteractionKind.EMAIL,
        "subject": headers.get("subject", "")[:500],
        "body_text": body[:MAX_BODY_CHARS],
        "occurred_at": occurred_at,
        "participants": _participants(headers),
    }


def parse_calendar_event(payload: dict[str, Any]) -> dict[str, Any]:
    """Extract the interaction fields of a Calendar event resource."""
    if not isinstance(payload.get("start"), dict):
        raise PayloadError("Calendar event has no start")

    participants = []
    organizer = payload.get("organizer") or {}
    if organizer.get("email"):
        participants.append(
            {
                "email": organizer["email"].lower(),
                "name": organizer.get("displayName") or "",
                "role": "organizer",
            }
        )
    for attendee in payload.get("attendees") or []:
        if not isinstance(attendee, dict) or not attendee.get("email"):
            continue
        if attendee.get("resource"):
            continue
        participants.append(
            {
                "email": attendee["email"].lower(),
                "name": attendee.get("displayName") or "",
                "role": "attendee",
            }
        )
    return {
        "kind": InteractionKind.MEETING,
        "subject": (payload.get("summary") or "")[:500],
        "body_text": (payload.get("description") or "")[:MAX_BODY_CHARS],
        "occurred_at": None,
        "participants": participants,
    }


PARSERS = {
    Provider.MAIL: parse_gmail_message,
    Provider.CALENDAR: parse_calendar_event,
}


def normalize_raw_event(db: Session, raw_event: RawEvent, batch_id: UUID) -> Interaction:
    """
    Upsert the interaction for one raw event.

    Raises PayloadError when the payload cannot be parsed.
    """
    if not isinstance(raw_event.payload, dict):
        raise PayloadError("Raw event payload is not an object")
    fields = PARSERS[Provider(raw_event.provider)](raw_event.payload)
    occurred_at = fields["occurred_at"] or raw_event.occurred_at

    interaction = (
        db.query(Interaction)
        .filter(
            Interaction.user_id == raw_event.user_id,
            Interaction.provider == raw_event.provider,
            Interaction.source_id == raw_event.source_id,
        )
        .first()
    )
    now = utcnow()
    if interaction is None:
        interaction = Interaction(
            user_id=raw_event.user_id,
            raw_event_id=raw_event.id,
            provider=raw_event.provider,
            source_id=raw_event.source_id,
            created_at=now,
        )
        db.add(interaction)
    interaction.batch_id = batch_id
    interaction.kind = fields["kind"].value
    interaction.subject = fields["subject"]
    interaction.body_text = fields["body_text"]
    interaction.occurred_at = occurred_at
    interaction.participants = fields["participants"]
    interaction.updated_at = now
    db.commit()
    db.refresh(interaction)
    return interaction


def list_batch_interactions(db: Session, user_id: UUID, batch_id: UUID) -> list[Interaction]:
    return (
        db.query(Interaction)
        .filter(Interaction.user_id == user_id, Interaction.batch_id == batch_id)
        .order_by(Interaction.occurred_at, Interaction.created_at)
        .all()
    )
