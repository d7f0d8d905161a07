"""Structured logging helpers (PII-safe)."""

from typing import Any
from uuid import UUID


def build_log_context(
    *,
    user_id: UUID | str | None = None,
    application_id: UUID | str | None = None,
    thread_id: UUID | str | None = None,
    issue_id: UUID | str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a log context dict carrying identifiers only, never content."""
    context: dict[str, Any] = {}
    if user_id:
        context["user_id"] = str(user_id)
    if application_id:
        context["application_id"] = str(application_id)
    if thread_id:
        context["thread_id"] = str(thread_id)
    if issue_id:
        context["issue_id"] = str(issue_id)
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
