"""Admin resolution of disputed orders.

Resolution is the only way out of ``disputed``.  Each outcome maps to a
fixed resulting status and payment flag:

==================  ===========  ================  =============
outcome             status       payment released  completed_at
==================  ===========  ================  =============
refund              cancelled    False             not set
release_payment     completed    True              set
partial_refund      completed    True              set
redo                in_progress  unchanged         not set
==================  ===========  ================  =============
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import NamedTuple

from orderflow.errors import InvalidOutcomeError, NotInDisputedStateError
from orderflow.models.schemas import (
    ActivityAction,
    DisputeOutcome,
    OrderStatus,
    ServiceOrder,
)
from orderflow.notifications.templates import NotificationKind
from orderflow.orchestrator.engine import Effects, OrderWorkflowEngine
from orderflow.orchestrator.state_machine import Actor, ensure_transition
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="disputes")


class OutcomeRule(NamedTuple):
    status: OrderStatus
    payment_released: bool | None  # None leaves the flag untouched
    completes: bool
    label: str
    summary: str


OUTCOME_RULES: dict[DisputeOutcome, OutcomeRule] = {
    DisputeOutcome.REFUND: OutcomeRule(
        OrderStatus.CANCELLED, False, False, "full refund", "Full refund"
    ),
    DisputeOutcome.RELEASE_PAYMENT: OutcomeRule(
        OrderStatus.COMPLETED,
        True,
        True,
        "payment released to creator",
        "Payment released to creator",
    ),
    DisputeOutcome.PARTIAL_REFUND: OutcomeRule(
        OrderStatus.COMPLETED, True, True, "partial refund", "Partial refund"
    ),
    DisputeOutcome.REDO: OutcomeRule(
        OrderStatus.IN_PROGRESS,
        None,
        False,
        "creator must redo the work",
        "Creator must redo",
    ),
}


def parse_outcome(value: DisputeOutcome | str) -> DisputeOutcome:
    if isinstance(value, DisputeOutcome):
        return value
    try:
        return DisputeOutcome(value)
    except ValueError:
        raise InvalidOutcomeError(f"Invalid dispute outcome: {value!r}") from None


class DisputeResolutionService:
    """Close disputed orders with one of the four binding outcomes."""

    def __init__(self, engine: OrderWorkflowEngine) -> None:
        self._engine = engine

    async def resolve(
        self,
        order_id: str,
        admin_id: str,
        resolution: str,
        outcome: DisputeOutcome | str,
    ) -> ServiceOrder:
        await self._engine.require_admin(admin_id)

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if order.status != OrderStatus.DISPUTED or order.dispute is None:
                raise NotInDisputedStateError("Order is not in disputed state")
            chosen = parse_outcome(outcome)
            rule = OUTCOME_RULES[chosen]
            ensure_transition(order.status, rule.status, Actor.ADMIN)

            now = datetime.now(timezone.utc)
            order.dispute.resolution = resolution
            order.dispute.resolved_by = admin_id
            order.dispute.resolved_at = now
            order.dispute.outcome = chosen

            order.status = rule.status
            if rule.payment_released is not None:
                order.payment_released = rule.payment_released
            if rule.completes:
                order.completed_at = now

            details = f"{rule.summary}: {resolution}" if resolution else rule.summary
            order.log(ActivityAction.DISPUTE_RESOLVED, admin_id, details)

            for recipient in (order.buyer_id, order.active_fulfiller_id):
                effects.notify(
                    recipient,
                    NotificationKind.DISPUTE_RESOLVED,
                    outcome=chosen.value,
                    outcome_label=rule.label,
                )

        order = await self._engine.mutate(order_id, apply, actor_id=admin_id)
        log.info(
            "disputes.resolved",
            order_id=order.id,
            admin_id=admin_id,
            outcome=order.dispute.outcome.value if order.dispute and order.dispute.outcome else None,
        )
        return order
