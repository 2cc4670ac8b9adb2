"""Notification sinks.

A sink receives ``(recipient_id, kind, payload)`` and is free to fail;
``NotificationDispatcher`` is what keeps those failures away from the
workflow.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from orderflow.models.database import Database
from orderflow.notifications.templates import NotificationKind, order_link, render
from orderflow.utils.logger import get_logger
from orderflow.utils.retry import retry

log = get_logger(__name__, component="notifications")


@runtime_checkable
class NotificationSink(Protocol):
    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        ...


class LoggingNotificationSink:
    """Sink that only writes a log line; used by the CLI."""

    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        title, message = render(kind, payload)
        log.info(
            "notification.logged",
            recipient_id=recipient_id,
            kind=kind.value,
            title=title,
            message=message,
        )


class DatabaseNotificationSink:
    """Store rendered notifications in the ``notifications`` table."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @retry(max_attempts=3, base_delay=0.05, exceptions=(sqlite3.OperationalError,))
    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        title, message = render(kind, payload)
        link = order_link(payload["order_id"]) if payload.get("order_id") else ""
        await self._db.execute(
            "INSERT INTO notifications "
            "(user_id, kind, title, message, link, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                recipient_id,
                kind.value,
                title,
                message,
                link,
                json.dumps(payload, default=str),
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    async def list_for_user(
        self, user_id: str, *, unread_only: bool = False
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        return await self._db.fetch_all(sql + " ORDER BY id DESC", (user_id,))

    async def mark_read(self, user_id: str, notification_id: int) -> bool:
        cursor = await self._db.execute(
            "UPDATE notifications SET is_read = 1 WHERE id = ? AND user_id = ?",
            (notification_id, user_id),
        )
        return cursor.rowcount > 0
