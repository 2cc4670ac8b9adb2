"""Tests for the order state graph (``orderflow.orchestrator.state_machine``)."""

from __future__ import annotations

import pytest

from orderflow.errors import InvalidTransitionError
from orderflow.models.schemas import OrderStatus
from orderflow.orchestrator.state_machine import (
    CANCELLABLE_STATUSES,
    DISPUTABLE_STATUSES,
    Actor,
    allowed_targets,
    can_transition,
    ensure_transition,
    is_terminal,
)


# =========================================================================
# can_transition
# =========================================================================


class TestCanTransition:
    """Verify the static transition-table lookup."""

    @pytest.mark.parametrize(
        "current, target, actor",
        [
            (OrderStatus.REQUESTED, OrderStatus.ACCEPTED, Actor.FULFILLER),
            (OrderStatus.REQUESTED, OrderStatus.ACCEPTED, Actor.ADMIN),
            (OrderStatus.REQUESTED, OrderStatus.REJECTED, Actor.FULFILLER),
            (OrderStatus.REQUESTED, OrderStatus.CANCELLED, Actor.BUYER),
            (OrderStatus.ACCEPTED, OrderStatus.IN_PROGRESS, Actor.FULFILLER),
            (OrderStatus.IN_PROGRESS, OrderStatus.DELIVERED, Actor.FULFILLER),
            (OrderStatus.IN_PROGRESS, OrderStatus.DISPUTED, Actor.BUYER),
            (OrderStatus.DELIVERED, OrderStatus.COMPLETED, Actor.BUYER),
            (OrderStatus.DELIVERED, OrderStatus.REVISION_REQUESTED, Actor.BUYER),
            (OrderStatus.REVISION_REQUESTED, OrderStatus.DELIVERED, Actor.FULFILLER),
            (OrderStatus.REVISION_REQUESTED, OrderStatus.CANCELLED, Actor.FULFILLER),
            (OrderStatus.DISPUTED, OrderStatus.CANCELLED, Actor.ADMIN),
            (OrderStatus.DISPUTED, OrderStatus.COMPLETED, Actor.ADMIN),
            (OrderStatus.DISPUTED, OrderStatus.IN_PROGRESS, Actor.ADMIN),
        ],
    )
    def test_valid_transitions(
        self, current: OrderStatus, target: OrderStatus, actor: Actor
    ) -> None:
        assert can_transition(current, target, actor) is True

    @pytest.mark.parametrize(
        "current, target, actor",
        [
            (OrderStatus.REQUESTED, OrderStatus.DELIVERED, Actor.FULFILLER),
            (OrderStatus.REQUESTED, OrderStatus.ACCEPTED, Actor.BUYER),
            (OrderStatus.ACCEPTED, OrderStatus.DELIVERED, Actor.FULFILLER),
            (OrderStatus.ACCEPTED, OrderStatus.DISPUTED, Actor.BUYER),
            (OrderStatus.DELIVERED, OrderStatus.COMPLETED, Actor.FULFILLER),
            (OrderStatus.DISPUTED, OrderStatus.CANCELLED, Actor.BUYER),
            (OrderStatus.DISPUTED, OrderStatus.COMPLETED, Actor.BUYER),
            (OrderStatus.DISPUTED, OrderStatus.DELIVERED, Actor.ADMIN),
            (OrderStatus.COMPLETED, OrderStatus.CANCELLED, Actor.BUYER),
            (OrderStatus.CANCELLED, OrderStatus.REQUESTED, Actor.ADMIN),
            (OrderStatus.REJECTED, OrderStatus.ACCEPTED, Actor.FULFILLER),
        ],
    )
    def test_invalid_transitions(
        self, current: OrderStatus, target: OrderStatus, actor: Actor
    ) -> None:
        assert can_transition(current, target, actor) is False

    def test_actor_is_optional(self) -> None:
        assert can_transition(OrderStatus.DISPUTED, OrderStatus.COMPLETED) is True
        assert can_transition(OrderStatus.COMPLETED, OrderStatus.DISPUTED) is False

    @pytest.mark.parametrize(
        "status", [OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REJECTED]
    )
    def test_terminal_states_have_no_exits(self, status: OrderStatus) -> None:
        assert is_terminal(status)
        for actor in Actor:
            assert allowed_targets(status, actor) == []

    def test_only_disputed_has_admin_exits(self) -> None:
        with_admin_exits = {
            status
            for status in OrderStatus
            if status != OrderStatus.REQUESTED and allowed_targets(status, Actor.ADMIN)
        }
        assert with_admin_exits == {OrderStatus.DISPUTED}


# =========================================================================
# Derived sets
# =========================================================================


class TestDerivedSets:
    def test_disputable_statuses(self) -> None:
        assert DISPUTABLE_STATUSES == {
            OrderStatus.IN_PROGRESS,
            OrderStatus.DELIVERED,
            OrderStatus.REVISION_REQUESTED,
        }

    def test_cancellable_statuses_exclude_disputed_and_terminal(self) -> None:
        assert CANCELLABLE_STATUSES == {
            OrderStatus.REQUESTED,
            OrderStatus.ACCEPTED,
            OrderStatus.IN_PROGRESS,
            OrderStatus.DELIVERED,
            OrderStatus.REVISION_REQUESTED,
        }

    def test_allowed_targets_for_fulfiller_on_requested(self) -> None:
        assert allowed_targets(OrderStatus.REQUESTED, Actor.FULFILLER) == [
            OrderStatus.ACCEPTED,
            OrderStatus.REJECTED,
            OrderStatus.CANCELLED,
        ]


# =========================================================================
# ensure_transition
# =========================================================================


class TestEnsureTransition:
    def test_allowed_edge_passes(self) -> None:
        ensure_transition(OrderStatus.DELIVERED, OrderStatus.COMPLETED, Actor.BUYER)

    def test_rejected_edge_raises_with_default_message(self) -> None:
        with pytest.raises(InvalidTransitionError, match="requested -> delivered"):
            ensure_transition(OrderStatus.REQUESTED, OrderStatus.DELIVERED, Actor.FULFILLER)

    def test_custom_reason(self) -> None:
        with pytest.raises(InvalidTransitionError, match="nope"):
            ensure_transition(
                OrderStatus.COMPLETED, OrderStatus.CANCELLED, Actor.BUYER, reason="nope"
            )
