"""Suggestion generator.

Turns a normalized interaction into structured suggestions (contacts and
tasks) with a confidence score. The generator is a collaborator; the
approval gate decides what is committed directly and what waits for review.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from omnisync.db.enums import ArtifactType, InteractionKind
from omnisync.db.models import Interaction

logger = logging.getLogger(__name__)

# Senders that never become contacts
_AUTOMATED_LOCAL_PARTS = ("noreply", "no-reply", "donotreply", "do-not-reply", "mailer-daemon", "notifications")

# Phrases suggesting the interaction carries a follow-up action
_ACTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bplease\b",
        r"\bcan you\b",
        r"\bcould you\b",
        r"\bfollow[ -]?up\b",
        r"\baction required\b",
        r"\breminder\b",
        r"\bdeadline\b",
        r"\bby (monday|tuesday|wednesday|thursday|friday|tomorrow|end of day|eod)\b",
        r"\bto[- ]?do\b",
    )
]


@dataclass
class Suggestion:
    """One AI-derived artifact proposed for an interaction."""

    artifact_type: ArtifactType
    dedup_key: str
    confidence: float
    data: dict[str, Any] = field(default_factory=dict)
    source_interaction_id: UUID | None = None


class SuggestionGenerator(ABC):
    """Abstract suggestion generator."""

    @abstractmethod
    async def suggest(self, interaction: Interaction, owner_email: str | None = None) -> list[Suggestion]:
        """Return suggestions derived from one interaction."""
        pass


def is_automated_address(email: str) -> bool:
    local = email.split("@", 1)[0].lower()
    return any(local.startswith(prefix) for prefix in _AUTOMATED_LOCAL_PARTS)


class HeuristicSuggestionGenerator(SuggestionGenerator):
    """
    Rule-based generator.

    Contacts come from participants; confidence rises with a display name and
    with the participant being the sender/organizer. Tasks come from action
    phrases in the subject or body.
    """

    async def suggest(self, interaction: Interaction, owner_email: str | None = None) -> list[Suggestion]:
        suggestions: list[Suggestion] = []
        owner = (owner_email or "").lower()
        seen: set[str] = set()

        for participant in interaction.participants or []:
            email = (participant.get("email") or "").strip().lower()
            if not email or "@" not in email or email == owner or email in seen:
                continue
            seen.add(email)
            if is_automated_address(email):
                continue
            name = (participant.get("name") or "").strip()
            confidence = 0.6
            if name:
                confidence = 0.9
                if participant.get("role") in ("from", "organizer"):
                    confidence = 0.95
            suggestions.append(
                Suggestion(
                    artifact_type=ArtifactType.CONTACT,
                    dedup_key=f"contact:{email}",
                    confidence=confidence,
                    data={"email": email, "name": name, "source": interaction.provider},
                    source_interaction_id=interaction.id,
                )
            )

        text = f"{interaction.subject}\n{interaction.body_text}"
        if any(pattern.search(text) for pattern in _ACTION_PATTERNS):
            subject = interaction.subject.strip() or "(no subject)"
            prefix = "Follow up on meeting" if interaction.kind == InteractionKind.MEETING.value else "Follow up"
            suggestions.append(
                Suggestion(
                    artifact_type=ArtifactType.TASK,
                    dedup_key=f"task:{interaction.provider}:{interaction.source_id}",
                    confidence=0.6,
                    data={
                        "title": f"{prefix}: {subject}"[:500],
                        "description": interaction.body_text[:1000],
                        "priority": "medium",
                    },
                    source_interaction_id=interaction.id,
                )
            )
        return suggestions


def get_suggestion_generator() -> SuggestionGenerator:
    """Get the configured suggestion generator."""
    return HeuristicSuggestionGenerator()
