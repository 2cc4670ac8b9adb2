"""Deliver notifications without ever failing the caller."""

from __future__ import annotations

import asyncio
from typing import Any

from orderflow.models.schemas import ServiceOrder
from orderflow.notifications.sinks import NotificationSink
from orderflow.notifications.templates import NotificationKind
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="notifications")


class NotificationDispatcher:
    """Wrap a ``NotificationSink`` so sends are bounded and never raise.

    Parameters
    ----------
    sink:
        Where notifications are delivered.
    timeout:
        Seconds a single send may take before it is abandoned.
    """

    def __init__(self, sink: NotificationSink, timeout: float = 5.0) -> None:
        self._sink = sink
        self._timeout = timeout

    @staticmethod
    def payload_for(order: ServiceOrder, **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "order_id": order.id,
            "order_number": order.order_number,
            "package_name": order.package_name,
        }
        payload.update(extra)
        return payload

    async def notify(
        self,
        recipient_id: str,
        kind: NotificationKind,
        order: ServiceOrder,
        **extra: Any,
    ) -> bool:
        """Send one notification; return whether it was delivered."""
        payload = self.payload_for(order, **extra)
        try:
            await asyncio.wait_for(
                self._sink.send(recipient_id, kind, payload), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            log.warning(
                "notification.timeout",
                recipient_id=recipient_id,
                kind=kind.value,
                order_id=order.id,
                timeout=self._timeout,
            )
            return False
        except Exception:
            log.exception(
                "notification.failed",
                recipient_id=recipient_id,
                kind=kind.value,
                order_id=order.id,
            )
            return False
        log.debug(
            "notification.sent",
            recipient_id=recipient_id,
            kind=kind.value,
            order_id=order.id,
        )
        return True

    async def notify_many(
        self, notices: list[tuple[str, NotificationKind, dict[str, Any]]], order: ServiceOrder
    ) -> None:
        for recipient_id, kind, extra in notices:
            await self.notify(recipient_id, kind, order, **extra)
