"""Enums for pipeline-derived entities."""

from enum import Enum


class ArtifactType(str, Enum):
    CONTACT = "contact"
    TASK = "task"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    PENDING_APPROVAL = "pending_approval"
    DISMISSED = "dismissed"
    DONE = "done"


class InteractionKind(str, Enum):
    EMAIL = "email"
    MEETING = "meeting"
