"""Order lifecycle state graph.

The graph is closed: every legal ``(current, target)`` pair is listed
below together with the kinds of actor allowed to drive it.  Anything not
in the table is an ``InvalidTransitionError``.
"""

from __future__ import annotations

from enum import Enum

from orderflow.errors import InvalidTransitionError
from orderflow.models.schemas import TERMINAL_STATUSES, OrderStatus


class Actor(str, Enum):
    """Which side of the order drives a transition."""

    BUYER = "buyer"
    FULFILLER = "fulfiller"
    ADMIN = "admin"


_PARTIES = frozenset({Actor.BUYER, Actor.FULFILLER})

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

_TRANSITIONS: dict[OrderStatus, dict[OrderStatus, frozenset[Actor]]] = {
    OrderStatus.REQUESTED: {
        OrderStatus.ACCEPTED: frozenset({Actor.FULFILLER, Actor.ADMIN}),
        OrderStatus.REJECTED: frozenset({Actor.FULFILLER}),
        OrderStatus.CANCELLED: _PARTIES,
    },
    OrderStatus.ACCEPTED: {
        OrderStatus.IN_PROGRESS: frozenset({Actor.FULFILLER}),
        OrderStatus.CANCELLED: _PARTIES,
    },
    OrderStatus.IN_PROGRESS: {
        OrderStatus.DELIVERED: frozenset({Actor.FULFILLER}),
        OrderStatus.CANCELLED: _PARTIES,
        OrderStatus.DISPUTED: frozenset({Actor.BUYER}),
    },
    OrderStatus.DELIVERED: {
        OrderStatus.COMPLETED: frozenset({Actor.BUYER}),
        OrderStatus.REVISION_REQUESTED: frozenset({Actor.BUYER}),
        OrderStatus.CANCELLED: _PARTIES,
        OrderStatus.DISPUTED: frozenset({Actor.BUYER}),
    },
    OrderStatus.REVISION_REQUESTED: {
        OrderStatus.DELIVERED: frozenset({Actor.FULFILLER}),
        OrderStatus.CANCELLED: _PARTIES,
        OrderStatus.DISPUTED: frozenset({Actor.BUYER}),
    },
    # Only dispute resolution leaves DISPUTED.
    OrderStatus.DISPUTED: {
        OrderStatus.CANCELLED: frozenset({Actor.ADMIN}),
        OrderStatus.COMPLETED: frozenset({Actor.ADMIN}),
        OrderStatus.IN_PROGRESS: frozenset({Actor.ADMIN}),
    },
    OrderStatus.COMPLETED: {},
    OrderStatus.CANCELLED: {},
    OrderStatus.REJECTED: {},
}

DISPUTABLE_STATUSES: frozenset[OrderStatus] = frozenset(
    current
    for current, targets in _TRANSITIONS.items()
    if OrderStatus.DISPUTED in targets
)

CANCELLABLE_STATUSES: frozenset[OrderStatus] = frozenset(
    current
    for current, targets in _TRANSITIONS.items()
    if _PARTIES <= targets.get(OrderStatus.CANCELLED, frozenset())
)


def can_transition(
    current: OrderStatus, target: OrderStatus, actor: Actor | None = None
) -> bool:
    """Return ``True`` if *current* -> *target* is in the graph.

    When *actor* is given, the edge must also be drivable by that actor.
    """
    allowed = _TRANSITIONS.get(current, {}).get(target)
    if allowed is None:
        return False
    return actor is None or actor in allowed


def allowed_targets(current: OrderStatus, actor: Actor) -> list[OrderStatus]:
    """Statuses *actor* may move an order in *current* to, in table order."""
    return [
        target
        for target, actors in _TRANSITIONS.get(current, {}).items()
        if actor in actors
    ]


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def ensure_transition(
    current: OrderStatus, target: OrderStatus, actor: Actor, *, reason: str | None = None
) -> None:
    """Raise ``InvalidTransitionError`` unless *actor* may move *current* -> *target*."""
    if can_transition(current, target, actor):
        return
    if reason is None:
        options = ", ".join(s.value for s in allowed_targets(current, actor)) or "none"
        reason = (
            f"Cannot move order from {current.value} -> {target.value} as {actor.value}"
            f" (allowed: {options})"
        )
    raise InvalidTransitionError(reason)
