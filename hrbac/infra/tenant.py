from __future__ import annotations

from contextvars import ContextVar
from typing import Any

org_id_ctx: ContextVar[str | None] = ContextVar("org_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_request_context(org_id: str | None, user_id: str | None) -> None:
    org_id_ctx.set(org_id)
    user_id_ctx.set(user_id)


def add_request_context(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor tagging every entry with the caller org and user."""
    org_id = org_id_ctx.get()
    user_id = user_id_ctx.get()
    if org_id:
        event_dict.setdefault("org_id", org_id)
    if user_id:
        event_dict.setdefault("user_id", user_id)
    return event_dict
