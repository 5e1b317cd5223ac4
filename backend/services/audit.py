"""Audit Sink for the Door Access Edge Service.

Records human readable access events. Each event is stored in the local audit
trail, broadcast to WebSocket clients and forwarded to the video management
bookmark API. record() returns immediately; the work runs on the dispatcher.
"""

import logging
from typing import Any, Iterable, Optional, Protocol

from database import insert_audit_event
from models import AuditEvent
from services.bookmarks import BookmarkClient
from services.tasks import TaskDispatcher
from services.websocket_manager import get_ws_manager

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Anything that accepts audit events without blocking."""

    def record(self, event: AuditEvent) -> None:
        ...


def build_tags(
    tags: Iterable[str] = (),
    kv_tags: Optional[dict[str, Any]] = None,
    granted: Optional[bool] = None,
) -> list[str]:
    """Normalize event tags.

    Always contains "api" and one access tag; key/value tags are rendered as
    "key:value". Duplicates are dropped, first occurrence wins.
    """
    out: dict[str, None] = {"api": None}

    if granted is True:
        out["ACCESS_GRANTED"] = None
    elif granted is False:
        out["ACCESS_DENIED"] = None
    else:
        out["ACCESS_UNKNOWN"] = None

    for tag in tags:
        if tag:
            out[str(tag).strip()] = None

    for key, value in (kv_tags or {}).items():
        if key and value is not None:
            out[f"{key}:{value}"] = None

    return list(out)


def build_description(message: str, details: Optional[dict[str, Any]] = None) -> str:
    """Append provided detail fields to the message as "Key: value" pairs."""
    parts = [
        f"{key}: {value}"
        for key, value in (details or {}).items()
        if value is not None and value != ""
    ]
    return f"{message} | {' | '.join(parts)}" if parts else message


class AuditLog:
    """Audit sink backed by SQLite, WebSocket broadcast and bookmarks."""

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        bookmarks: Optional[BookmarkClient] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._bookmarks = bookmarks

    def record(self, event: AuditEvent) -> None:
        """Record an event in the background. Never raises."""
        self._dispatcher.dispatch(self._record(event), name=f"audit:{event.name}")

    async def _record(self, event: AuditEvent) -> None:
        tags = build_tags(event.tags, event.kv_tags, event.granted)
        description = build_description(event.message, event.details)

        try:
            await insert_audit_event(event.name, description, tags)
        except Exception as e:
            logger.error(f"Failed to store audit event '{event.name}': {e}")

        try:
            await get_ws_manager().broadcast_audit_event(event.name, description, tags)
        except Exception as e:
            logger.warning(f"Failed to broadcast audit event '{event.name}': {e}")

        if self._bookmarks is not None:
            await self._bookmarks.create_bookmark(event.name, description, tags)
