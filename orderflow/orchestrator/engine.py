"""Order workflow engine.

Every state change goes through ``OrderWorkflowEngine.mutate``: the order
is loaded under a per-order lock, the requested change is validated and
applied to a deep copy, and the copy is written back with a
version-checked update.  A guard that fails raises before anything is
saved, so callers never observe a half-applied transition.  Notifications
are sent only after the save and can never fail the operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from config.settings import Settings, settings as default_settings
from orderflow.errors import (
    AlreadyTerminalError,
    DisputeAlreadyOpenError,
    DisputeInProgressError,
    ForbiddenError,
    InvalidTransitionError,
    NoFulfillerAvailableError,
    NotAvailableError,
    NotFoundError,
    NotFoundOrUnauthorizedError,
    RevisionLimitExceededError,
)
from orderflow.models.schemas import (
    ActivityAction,
    DeliveryPayload,
    Dispute,
    OrderFilters,
    OrderMessage,
    OrderStatus,
    ServiceOrder,
    UserRole,
    due_date_from,
)
from orderflow.models.stores import CatalogStore, OrderStore, PackageStore, UserDirectory
from orderflow.notifications.dispatcher import NotificationDispatcher
from orderflow.notifications.templates import NotificationKind
from orderflow.orchestrator.pricing import split_price, to_money
from orderflow.orchestrator.state_machine import (
    CANCELLABLE_STATUSES,
    DISPUTABLE_STATUSES,
    Actor,
    ensure_transition,
)
from orderflow.utils.locks import KeyedLock
from orderflow.utils.logger import get_logger, order_context

log = get_logger(__name__, component="engine")

FULFILLER_TARGETS: frozenset[OrderStatus] = frozenset(
    {
        OrderStatus.ACCEPTED,
        OrderStatus.REJECTED,
        OrderStatus.IN_PROGRESS,
        OrderStatus.DELIVERED,
    }
)
BUYER_TARGETS: frozenset[OrderStatus] = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.REVISION_REQUESTED}
)

_DENIED = "Order not found or unauthorized"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_status(value: OrderStatus | str) -> OrderStatus:
    """Parse a requested status, rejecting anything outside the enum."""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidTransitionError(f"Unknown order status: {value!r}") from None


Notice = tuple[str, NotificationKind, dict[str, Any]]


@dataclass
class Effects:
    """Side effects a mutation schedules for after the order is saved."""

    notices: list[Notice] = field(default_factory=list)
    followups: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    def notify(self, recipient_id: str, kind: NotificationKind, **extra: Any) -> None:
        self.notices.append((recipient_id, kind, extra))


Mutation = Callable[[ServiceOrder, Effects], None]


class OrderWorkflowEngine:
    """Validate and apply every service order transition.

    Parameters
    ----------
    orders, packages, users, catalog:
        Document stores the engine reads and writes.
    notifier:
        Dispatcher used for fire-and-forget notifications.
    settings:
        Fee rates and generic-request defaults.
    """

    def __init__(
        self,
        orders: OrderStore,
        packages: PackageStore,
        users: UserDirectory,
        catalog: CatalogStore,
        notifier: NotificationDispatcher,
        *,
        settings: Settings | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self.orders = orders
        self.packages = packages
        self.users = users
        self.catalog = catalog
        self.notifier = notifier
        self.settings = settings or default_settings
        self._locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_order(
        self,
        buyer_id: str,
        package_id: str,
        requirements: str,
        attachments: list[str] | None = None,
    ) -> ServiceOrder:
        """Instantiate an order from an active service package."""
        package = await self.packages.get(package_id)
        if package is None or not package.is_active:
            raise NotAvailableError("Service package not available")

        now = _utcnow()
        price = to_money(package.price)
        platform_fee, creator_payout = split_price(
            price, self.settings.package_platform_fee_rate
        )
        order = ServiceOrder(
            package_id=package.id,
            catalog_item_id=package.catalog_item_id,
            buyer_id=buyer_id,
            creator_id=package.creator_id,
            package_name=package.name,
            price=price,
            delivery_days=package.delivery_days,
            revisions=package.revisions,
            requirements=requirements,
            attachments=list(attachments or []),
            due_date=due_date_from(now, package.delivery_days),
            platform_fee=platform_fee,
            creator_payout=creator_payout,
            created_at=now,
            updated_at=now,
        )
        order.log(ActivityAction.ORDER_CREATED, buyer_id, "Order placed")
        await self.orders.insert(order)
        log.info(
            "engine.order_created",
            order_id=order.id,
            order_number=order.order_number,
            package_id=package.id,
            buyer_id=buyer_id,
            price=str(price),
        )

        await self._run_followups(order, [lambda: self.packages.increment_orders(package.id)])

        buyer = await self.users.get(buyer_id)
        await self.notifier.notify(
            package.creator_id,
            NotificationKind.ORDER_CREATED,
            order,
            buyer_name=buyer.name if buyer else "A buyer",
        )
        return order

    async def create_generic_request(
        self,
        buyer_id: str,
        catalog_item_id: str,
        requirements: str,
        attachments: list[str] | None = None,
    ) -> ServiceOrder:
        """Open a custom request that an admin will price and assign.

        The order is bound to the unassigned-requests pool until
        ``AdminAssignmentService.reassign`` picks a fulfiller.
        """
        item = await self.catalog.get(catalog_item_id)
        if item is None:
            raise NotFoundError("Catalog item not found")
        if not await self.users.has_role(UserRole.ADMIN):
            raise NoFulfillerAvailableError("No admin available to handle requests")

        now = _utcnow()
        delivery_days = self.settings.generic_request_delivery_days
        order = ServiceOrder(
            package_id=None,
            catalog_item_id=item.id,
            buyer_id=buyer_id,
            creator_id=self.settings.unassigned_pool_id,
            is_generic_request=True,
            package_name=f"Custom: {item.title}",
            delivery_days=delivery_days,
            revisions=self.settings.generic_request_revisions,
            requirements=requirements,
            attachments=list(attachments or []),
            due_date=due_date_from(now, delivery_days),
            created_at=now,
            updated_at=now,
        )
        order.log(ActivityAction.ORDER_CREATED, buyer_id, "Custom request submitted")
        await self.orders.insert(order)
        log.info(
            "engine.generic_request_created",
            order_id=order.id,
            order_number=order.order_number,
            catalog_item_id=item.id,
            buyer_id=buyer_id,
        )
        return order

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str, requester_id: str) -> ServiceOrder:
        """Return the order if *requester_id* is its buyer or a fulfiller."""
        order = await self.orders.get(order_id)
        if order is None or not order.is_party(requester_id):
            raise NotFoundOrUnauthorizedError(_DENIED)
        return order

    async def load(self, order_id: str) -> ServiceOrder:
        """Admin lookup with no party check."""
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Service order not found")
        return order

    async def list_for_buyer(self, buyer_id: str) -> list[ServiceOrder]:
        return await self.orders.find(buyer_id=buyer_id)

    async def list_for_fulfiller(
        self, fulfiller_id: str, status: OrderStatus | str | None = None
    ) -> list[ServiceOrder]:
        filters = OrderFilters(status=coerce_status(status)) if status else None
        return await self.orders.find(fulfiller_id=fulfiller_id, filters=filters)

    async def list_all(self, filters: OrderFilters | None = None) -> list[ServiceOrder]:
        return await self.orders.find(filters=filters or OrderFilters())

    # ------------------------------------------------------------------
    # Core read-modify-write
    # ------------------------------------------------------------------

    async def mutate(
        self,
        order_id: str,
        apply: Mutation,
        *,
        party: Callable[[ServiceOrder], bool] | None = None,
        actor_id: str | None = None,
    ) -> ServiceOrder:
        """Run *apply* against a fresh copy of the order and save it.

        *party* decides whether the caller may see the order at all; when it
        is ``None`` (admin paths) only existence is checked.  Everything
        logged underneath carries *order_id* and *actor_id*.
        """
        with order_context(order_id, actor_id):
            found = await self.orders.get(order_id)
            if found is None:
                if party is not None:
                    raise NotFoundOrUnauthorizedError(_DENIED)
                raise NotFoundError("Service order not found")

            async with self._locks(found.id):
                current = await self.orders.get(found.id)
                if current is None or (party is not None and not party(current)):
                    raise NotFoundOrUnauthorizedError(_DENIED)

                working = current.model_copy(deep=True)
                effects = Effects()
                apply(working, effects)
                saved = await self.orders.save(working, expected_version=current.version)

                if saved.status != current.status:
                    log.info(
                        "engine.transition",
                        from_status=current.status.value,
                        to_status=saved.status.value,
                    )

            await self._run_followups(saved, effects.followups)
            await self.notifier.notify_many(await self._route_notices(effects.notices), saved)
            return saved

    async def _route_notices(self, notices: list[Notice]) -> list[Notice]:
        """Send notices addressed to the unassigned pool to every admin instead."""
        pool_id = self.settings.unassigned_pool_id
        if all(recipient != pool_id for recipient, _, _ in notices):
            return notices
        try:
            admin_ids = [u.id for u in await self.users.list_by_roles((UserRole.ADMIN,))]
        except Exception:
            log.exception("engine.admin_lookup_failed")
            admin_ids = []

        routed: list[Notice] = []
        for recipient, kind, extra in notices:
            if recipient == pool_id:
                routed.extend((admin_id, kind, extra) for admin_id in admin_ids)
            else:
                routed.append((recipient, kind, extra))
        return routed

    async def _run_followups(
        self, order: ServiceOrder, followups: list[Callable[[], Awaitable[None]]]
    ) -> None:
        # Counter updates on other documents; the order itself is already saved.
        for followup in followups:
            try:
                await followup()
            except Exception:
                log.exception("engine.followup_failed", order_id=order.id)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(
        self,
        order_id: str,
        sender_id: str,
        text: str,
        attachments: list[str] | None = None,
    ) -> ServiceOrder:
        """Append a chat message; the status is untouched."""

        def apply(order: ServiceOrder, effects: Effects) -> None:
            order.messages.append(
                OrderMessage(
                    sender_id=sender_id,
                    message=text,
                    attachments=list(attachments or []),
                )
            )

        return await self.mutate(
            order_id, apply, party=lambda o: o.is_party(sender_id), actor_id=sender_id
        )

    # ------------------------------------------------------------------
    # Fulfiller transitions
    # ------------------------------------------------------------------

    async def transition_by_fulfiller(
        self,
        order_id: str,
        fulfiller_id: str,
        target: OrderStatus | str,
        payload: DeliveryPayload | None = None,
    ) -> ServiceOrder:
        """Accept, reject, start, or deliver an order."""
        status = coerce_status(target)
        if status not in FULFILLER_TARGETS:
            raise InvalidTransitionError(
                f"Fulfillers cannot move an order to {status.value}"
            )
        delivery = payload or DeliveryPayload()

        def apply(order: ServiceOrder, effects: Effects) -> None:
            previous = order.status
            ensure_transition(previous, status, Actor.FULFILLER)
            now = _utcnow()
            order.status = status

            if status == OrderStatus.ACCEPTED:
                order.accepted_at = now
                order.log(ActivityAction.STATUS_ACCEPTED, fulfiller_id, "Order accepted by creator")
                effects.notify(order.buyer_id, NotificationKind.ORDER_ACCEPTED)
            elif status == OrderStatus.REJECTED:
                order.log(ActivityAction.STATUS_REJECTED, fulfiller_id, "Order rejected by creator")
                effects.notify(order.buyer_id, NotificationKind.ORDER_REJECTED)
            elif status == OrderStatus.IN_PROGRESS:
                order.log(ActivityAction.STATUS_IN_PROGRESS, fulfiller_id, "Creator started working")
                effects.notify(order.buyer_id, NotificationKind.ORDER_IN_PROGRESS)
            elif status == OrderStatus.DELIVERED:
                order.delivered_at = now
                order.delivery_files = list(delivery.delivery_files)
                order.delivery_note = delivery.delivery_note
                details = (
                    f"Revision {order.revisions_used} delivered"
                    if previous == OrderStatus.REVISION_REQUESTED
                    else "Work delivered"
                )
                order.log(ActivityAction.STATUS_DELIVERED, fulfiller_id, details)
                effects.notify(order.buyer_id, NotificationKind.ORDER_DELIVERED)
            else:  # pragma: no cover - FULFILLER_TARGETS is checked above
                raise InvalidTransitionError(f"Unhandled fulfiller status {status.value}")

        return await self.mutate(
            order_id, apply, party=lambda o: o.is_fulfiller(fulfiller_id), actor_id=fulfiller_id
        )

    # ------------------------------------------------------------------
    # Buyer transitions
    # ------------------------------------------------------------------

    async def transition_by_buyer(
        self, order_id: str, buyer_id: str, target: OrderStatus | str
    ) -> ServiceOrder:
        """Complete a delivered order or send it back for a revision."""
        status = coerce_status(target)
        if status not in BUYER_TARGETS:
            raise InvalidTransitionError(f"Buyers cannot move an order to {status.value}")

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if status == OrderStatus.COMPLETED:
                self._complete_by_buyer(order, buyer_id, effects)
            else:
                self._request_revision(order, buyer_id, effects)

        return await self.mutate(
            order_id, apply, party=lambda o: o.buyer_id == buyer_id, actor_id=buyer_id
        )

    def _complete_by_buyer(self, order: ServiceOrder, buyer_id: str, effects: Effects) -> None:
        if order.status != OrderStatus.DELIVERED:
            raise InvalidTransitionError("Can only complete delivered orders")
        ensure_transition(order.status, OrderStatus.COMPLETED, Actor.BUYER)

        order.status = OrderStatus.COMPLETED
        order.completed_at = _utcnow()
        order.payment_released = True
        order.log(ActivityAction.STATUS_COMPLETED, buyer_id, "Buyer accepted delivery")

        if order.package_id is not None:
            package_id, revenue = order.package_id, order.price
            effects.followups.append(
                lambda: self.packages.record_completion(package_id, revenue)
            )
        effects.notify(order.active_fulfiller_id, NotificationKind.ORDER_COMPLETED)

    def _request_revision(self, order: ServiceOrder, buyer_id: str, effects: Effects) -> None:
        if order.status != OrderStatus.DELIVERED:
            raise InvalidTransitionError("Can only request revision on delivered orders")
        if order.revisions_remaining == 0:
            raise RevisionLimitExceededError(
                f"All {order.revisions} revisions have been used"
            )
        ensure_transition(order.status, OrderStatus.REVISION_REQUESTED, Actor.BUYER)

        order.status = OrderStatus.REVISION_REQUESTED
        order.revisions_used += 1
        label = (
            f"{order.revisions_used}/{order.revisions}"
            if order.revisions > 0
            else f"{order.revisions_used}"
        )
        order.log(ActivityAction.REVISION_REQUESTED, buyer_id, f"Revision {label} requested")
        effects.notify(
            order.active_fulfiller_id,
            NotificationKind.REVISION_REQUESTED,
            revision_label=f"revision {label}",
        )

    # ------------------------------------------------------------------
    # Cancellation and disputes
    # ------------------------------------------------------------------

    async def cancel(
        self, order_id: str, actor_id: str, reason: str | None = None
    ) -> ServiceOrder:
        """Cancel a live order on behalf of its buyer or a fulfiller."""
        details = (reason or "").strip() or "Order cancelled"

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if order.is_terminal:
                raise AlreadyTerminalError(
                    f"Cannot cancel an order that is already {order.status.value}"
                )
            if order.status == OrderStatus.DISPUTED:
                raise DisputeInProgressError(
                    "Cannot cancel a disputed order. Wait for admin resolution."
                )
            if order.status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot cancel an order that is {order.status.value}"
                )
            by_buyer = actor_id == order.buyer_id

            order.status = OrderStatus.CANCELLED
            order.log(ActivityAction.ORDER_CANCELLED, actor_id, details)
            counterparty = order.active_fulfiller_id if by_buyer else order.buyer_id
            effects.notify(counterparty, NotificationKind.ORDER_CANCELLED, reason=details)

        return await self.mutate(
            order_id, apply, party=lambda o: o.is_party(actor_id), actor_id=actor_id
        )

    async def open_dispute(self, order_id: str, buyer_id: str, reason: str) -> ServiceOrder:
        """Escalate an active or delivered order to an admin."""

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if order.status not in DISPUTABLE_STATUSES:
                raise InvalidTransitionError(
                    "Can only open a dispute on active or delivered orders"
                )
            if order.dispute is not None and order.dispute.opened_at is not None:
                raise DisputeAlreadyOpenError("A dispute has already been opened on this order")
            ensure_transition(order.status, OrderStatus.DISPUTED, Actor.BUYER)

            order.status = OrderStatus.DISPUTED
            order.dispute = Dispute(reason=reason, opened_by=buyer_id)
            order.log(ActivityAction.DISPUTE_OPENED, buyer_id, reason)
            effects.notify(order.active_fulfiller_id, NotificationKind.DISPUTE_OPENED)

        return await self.mutate(
            order_id, apply, party=lambda o: o.buyer_id == buyer_id, actor_id=buyer_id
        )

    # ------------------------------------------------------------------
    # Shared admin guard
    # ------------------------------------------------------------------

    async def require_admin(self, user_id: str) -> None:
        """Raise ``ForbiddenError`` unless *user_id* is an admin account."""
        user = await self.users.get(user_id)
        if user is None or user.role != UserRole.ADMIN:
            raise ForbiddenError("Admin privileges required")
