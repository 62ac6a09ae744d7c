"""SQLAlchemy ORM models."""

from omnisync.db.models.approvals import PendingApproval
from omnisync.db.models.auth import User
from omnisync.db.models.entities import Contact, Embedding, Task
from omnisync.db.models.events import Interaction, RawEvent
from omnisync.db.models.integrations import Credential
from omnisync.db.models.jobs import Job
from omnisync.db.models.sync import ImportCursor, SyncSession

__all__ = [
    "Contact",
    "Credential",
    "Embedding",
    "ImportCursor",
    "Interaction",
    "Job",
    "PendingApproval",
    "RawEvent",
    "SyncSession",
    "Task",
    "User",
]
