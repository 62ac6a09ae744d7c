"""Structured logging helpers (PII-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    session_id: UUID | str | None = None,
    batch_id: UUID | str | None = None,
    job_id: UUID | str | None = None,
    job_kind: str | None = None,
    provider: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict for ``extra=``."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if session_id:
        context["session_id"] = str(session_id)
    if batch_id:
        context["batch_id"] = str(batch_id)
    if job_id:
        context["job_id"] = str(job_id)
    if job_kind:
        context["job_kind"] = job_kind
    if provider:
        context["provider"] = provider
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
