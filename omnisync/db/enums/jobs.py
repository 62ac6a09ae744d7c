"""Job-related enums."""

from enum import Enum


class JobKind(str, Enum):
    """Pipeline stages, executed in this order within a batch."""

    FETCH = "fetch"
    NORMALIZE = "normalize"
    EXTRACT_ENTITIES = "extract_entities"
    EMBED = "embed"


class JobStatus(str, Enum):
    """Status of background jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


PIPELINE_ORDER: tuple[JobKind, ...] = (
    JobKind.FETCH,
    JobKind.NORMALIZE,
    JobKind.EXTRACT_ENTITIES,
    JobKind.EMBED,
)

OPEN_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)
