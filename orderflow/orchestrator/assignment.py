"""Admin assignment of fulfillers, mostly for custom requests.

Custom requests start out bound to the unassigned-requests pool with no
price.  Assigning a fulfiller can also set the price, which is split at
the brokered platform rate, and accepts the order on the fulfiller's
behalf when it is still ``requested``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from orderflow.errors import AlreadyTerminalError, InvalidFulfillerError
from orderflow.models.schemas import (
    ActivityAction,
    OrderStatus,
    ServiceOrder,
    User,
    UserRole,
)
from orderflow.notifications.templates import NotificationKind
from orderflow.orchestrator.engine import Effects, OrderWorkflowEngine
from orderflow.orchestrator.pricing import split_price, to_money
from orderflow.orchestrator.state_machine import Actor, ensure_transition
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="assignment")

FULFILLER_ROLES = (UserRole.CREATOR, UserRole.ADMIN)


class AdminAssignmentService:
    def __init__(self, engine: OrderWorkflowEngine) -> None:
        self._engine = engine

    async def list_available_fulfillers(self) -> list[User]:
        """Creators and admins, sorted by name."""
        return await self._engine.users.list_by_roles(FULFILLER_ROLES)

    async def reassign(
        self,
        order_id: str,
        assigned_creator_id: str,
        admin_id: str,
        price: Decimal | float | None = None,
    ) -> ServiceOrder:
        """Bind *assigned_creator_id* to the order, optionally pricing it."""
        await self._engine.require_admin(admin_id)
        fulfiller = await self._engine.users.get(assigned_creator_id)
        if fulfiller is None or fulfiller.role not in FULFILLER_ROLES:
            raise InvalidFulfillerError("Invalid creator")

        fee_rate = self._engine.settings.brokered_platform_fee_rate

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if order.is_terminal:
                raise AlreadyTerminalError(
                    f"Cannot reassign an order that is already {order.status.value}"
                )
            accepting = order.status == OrderStatus.REQUESTED
            if accepting:
                ensure_transition(order.status, OrderStatus.ACCEPTED, Actor.ADMIN)

            order.assigned_creator_id = fulfiller.id
            order.log(ActivityAction.CREATOR_ASSIGNED, admin_id, f"Assigned to {fulfiller.name}")
            effects.notify(fulfiller.id, NotificationKind.ORDER_ASSIGNED)

            if price is not None and price > 0:
                amount = to_money(price)
                order.price = amount
                order.platform_fee, order.creator_payout = split_price(amount, fee_rate)
                order.log(ActivityAction.PRICE_SET, admin_id, f"Price set to ${amount:.2f}")

            if accepting:
                order.status = OrderStatus.ACCEPTED
                order.accepted_at = datetime.now(timezone.utc)
                order.log(ActivityAction.STATUS_ACCEPTED, admin_id, "Order accepted by admin")
                effects.notify(order.buyer_id, NotificationKind.ORDER_ACCEPTED)

        order = await self._engine.mutate(order_id, apply, actor_id=admin_id)
        log.info(
            "assignment.reassigned",
            order_id=order.id,
            assigned_creator_id=fulfiller.id,
            admin_id=admin_id,
            price=str(order.price),
            status=order.status.value,
        )
        return order
