"""Job handler registry."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from omnisync.db.enums import JobKind
from omnisync.jobs.handlers import sync

JobHandler = Callable[[object, object], Awaitable[dict[str, Any] | None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobKind.FETCH.value: sync.process_fetch,
    JobKind.NORMALIZE.value: sync.process_normalize,
    JobKind.EXTRACT_ENTITIES.value: sync.process_extract_entities,
    JobKind.EMBED.value: sync.process_embed,
}


def resolve_job_handler(kind: str) -> JobHandler:
    handler = JOB_HANDLERS.get(kind)
    if not handler:
        raise ValueError(f"Unknown job kind: {kind}")
    return handler
