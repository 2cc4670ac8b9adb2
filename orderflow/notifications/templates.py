"""Notification kinds and the text rendered for each of them."""

from __future__ import annotations

from enum import Enum
from typing import Any


class NotificationKind(str, Enum):
    ORDER_CREATED = "order_created"
    ORDER_ACCEPTED = "order_accepted"
    ORDER_IN_PROGRESS = "order_in_progress"
    ORDER_DELIVERED = "order_delivered"
    ORDER_COMPLETED = "order_completed"
    ORDER_REJECTED = "order_rejected"
    REVISION_REQUESTED = "revision_requested"
    ORDER_CANCELLED = "order_cancelled"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    ORDER_ASSIGNED = "order_assigned"


# kind -> (title, message).  Messages are ``str.format_map`` templates over
# the notification payload.
TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.ORDER_CREATED: (
        "New service order",
        '{buyer_name} ordered "{package_name}". Review and accept the order.',
    ),
    NotificationKind.ORDER_ACCEPTED: (
        "Order accepted",
        'Your order for "{package_name}" has been accepted.',
    ),
    NotificationKind.ORDER_IN_PROGRESS: (
        "Work started",
        'Work has started on "{package_name}".',
    ),
    NotificationKind.ORDER_DELIVERED: (
        "Order delivered",
        'Your order for "{package_name}" has been delivered. Please review the work.',
    ),
    NotificationKind.ORDER_COMPLETED: (
        "Order completed",
        'The service order for "{package_name}" has been completed.',
    ),
    NotificationKind.ORDER_REJECTED: (
        "Order rejected",
        'Your order for "{package_name}" was rejected.',
    ),
    NotificationKind.REVISION_REQUESTED: (
        "Revision requested",
        'The buyer requested a revision on "{package_name}" ({revision_label}).',
    ),
    NotificationKind.ORDER_CANCELLED: (
        "Order cancelled",
        'Service order for "{package_name}" was cancelled: {reason}',
    ),
    NotificationKind.DISPUTE_OPENED: (
        "Dispute opened",
        'A dispute has been opened on the service order for "{package_name}". '
        "An admin will review it.",
    ),
    NotificationKind.DISPUTE_RESOLVED: (
        "Dispute resolved",
        'The dispute on "{package_name}" has been resolved. Outcome: {outcome_label}.',
    ),
    NotificationKind.ORDER_ASSIGNED: (
        "Order assigned to you",
        'You have been assigned the service order for "{package_name}".',
    ),
}


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render(kind: NotificationKind, payload: dict[str, Any]) -> tuple[str, str]:
    """Return ``(title, message)`` for *kind*; unknown placeholders render empty."""
    title, template = TEMPLATES[kind]
    return title, template.format_map(_Defaulting(payload)).strip()


def order_link(order_id: str) -> str:
    return f"/service-orders/{order_id}"
