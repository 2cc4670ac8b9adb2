"""Tests for the order workflow engine (``orderflow.orchestrator.engine``).

Covers order creation, every buyer and fulfiller transition with its
guards, cancellation, disputes, messaging, and the guarantee that a failed
guard leaves the stored order untouched.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from orderflow.errors import (
    AlreadyTerminalError,
    DisputeInProgressError,
    ForbiddenError,
    InvalidTransitionError,
    NoFulfillerAvailableError,
    NotAvailableError,
    NotFoundError,
    NotFoundOrUnauthorizedError,
    RevisionLimitExceededError,
)
from orderflow.models.database import Database
from orderflow.models.schemas import (
    ActivityAction,
    DeliveryPayload,
    OrderStatus,
    ServiceOrder,
    ServicePackage,
    User,
    UserRole,
)
from orderflow.notifications.templates import NotificationKind
from orderflow.orchestrator.engine import OrderWorkflowEngine, coerce_status

from conftest import RecordingSink, Seed


# =========================================================================
# Helpers
# =========================================================================

async def _deliver(engine: OrderWorkflowEngine, order_id: str, fulfiller_id: str) -> ServiceOrder:
    return await engine.transition_by_fulfiller(
        order_id,
        fulfiller_id,
        OrderStatus.DELIVERED,
        DeliveryPayload(delivery_files=["deck.pdf"], delivery_note="First draft"),
    )


def _snapshot(order: ServiceOrder) -> tuple:
    return (
        order.status,
        len(order.activity_log),
        order.version,
        order.price,
        order.platform_fee,
        order.creator_payout,
        order.payment_released,
        order.revisions_used,
    )


# =========================================================================
# Creation
# =========================================================================


class TestCreateOrder:
    async def test_copies_package_terms_and_splits_fee(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        assert placed_order.status == OrderStatus.REQUESTED
        assert placed_order.price == Decimal("100.00")
        assert placed_order.platform_fee == Decimal("20.00")
        assert placed_order.creator_payout == Decimal("80.00")
        assert placed_order.revisions == 3
        assert placed_order.delivery_days == 5
        assert placed_order.package_name == "Standard deck"
        assert placed_order.creator_id == seed.creator.id
        assert placed_order.catalog_item_id == seed.item.id
        assert placed_order.is_generic_request is False
        assert placed_order.due_date == placed_order.created_at + timedelta(days=5)

    async def test_logs_creation_and_notifies_creator(
        self, seed: Seed, sink: RecordingSink, placed_order: ServiceOrder
    ) -> None:
        assert [e.action for e in placed_order.activity_log] == [ActivityAction.ORDER_CREATED.value]
        assert placed_order.activity_log[0].performed_by == seed.buyer.id

        recipient, kind, payload = sink.sent[-1]
        assert recipient == seed.creator.id
        assert kind == NotificationKind.ORDER_CREATED
        assert payload["order_id"] == placed_order.id
        assert payload["package_name"] == "Standard deck"
        assert payload["buyer_name"] == "Bo Buyer"

    async def test_order_number_format(self, placed_order: ServiceOrder) -> None:
        prefix, millis, sequence = placed_order.order_number.split("-")
        assert prefix == "SRV"
        assert millis.isdigit()
        assert sequence == "00001"

    async def test_increments_package_order_count(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        package = await engine.packages.get(seed.package.id)
        assert package is not None
        assert package.stats.orders == 1

    async def test_terms_are_snapshotted(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        await engine.packages.set_active(seed.package.id, False)
        stored = await engine.load(placed_order.id)
        assert stored.price == Decimal("100.00")
        assert stored.package_name == "Standard deck"

    async def test_inactive_package_rejected(self, engine: OrderWorkflowEngine, seed: Seed) -> None:
        await engine.packages.set_active(seed.package.id, False)
        with pytest.raises(NotAvailableError, match="Service package not available"):
            await engine.create_order(seed.buyer.id, seed.package.id, "anything")
        assert await engine.orders.count() == 0

    async def test_unknown_package_rejected(self, engine: OrderWorkflowEngine, seed: Seed) -> None:
        with pytest.raises(NotAvailableError):
            await engine.create_order(seed.buyer.id, "missing", "anything")

    @pytest.mark.parametrize(
        "price, fee, payout",
        [
            ("100.00", "20.00", "80.00"),
            ("19.99", "4.00", "15.99"),
            ("0.05", "0.01", "0.04"),
            ("0.00", "0.00", "0.00"),
        ],
    )
    async def test_fee_plus_payout_equals_price(
        self,
        engine: OrderWorkflowEngine,
        seed: Seed,
        price: str,
        fee: str,
        payout: str,
    ) -> None:
        package = await engine.packages.insert(
            ServicePackage(
                creator_id=seed.creator.id,
                catalog_item_id=seed.item.id,
                name=f"Priced {price}",
                slug=f"priced-{price}",
                price=price,
                delivery_days=1,
            )
        )
        order = await engine.create_order(seed.buyer.id, package.id, "go")
        assert (order.platform_fee, order.creator_payout) == (Decimal(fee), Decimal(payout))
        assert order.platform_fee + order.creator_payout == order.price

    async def test_split_survives_storage_exactly(
        self, engine: OrderWorkflowEngine, seed: Seed
    ) -> None:
        package = await engine.packages.insert(
            ServicePackage(
                creator_id=seed.creator.id,
                catalog_item_id=seed.item.id,
                name="Odd price",
                slug="odd-price",
                price=19.99,
                delivery_days=1,
            )
        )
        placed = await engine.create_order(seed.buyer.id, package.id, "go")
        stored = await engine.load(placed.id)
        assert stored.price == Decimal("19.99")
        assert stored.platform_fee + stored.creator_payout == stored.price


class TestCreateGenericRequest:
    async def test_bound_to_unassigned_pool(
        self, engine: OrderWorkflowEngine, seed: Seed
    ) -> None:
        order = await engine.create_generic_request(
            seed.buyer.id, seed.item.id, "A custom investor one-pager"
        )
        assert order.is_generic_request is True
        assert order.package_id is None
        assert order.creator_id == engine.settings.unassigned_pool_id
        assert order.assigned_creator_id is None
        assert order.price == Decimal("0.00")
        assert order.platform_fee == Decimal("0.00")
        assert order.creator_payout == Decimal("0.00")
        assert order.delivery_days == engine.settings.generic_request_delivery_days
        assert order.revisions == engine.settings.generic_request_revisions
        assert order.package_name == "Custom: Pitch Deck Template"
        assert order.status == OrderStatus.REQUESTED

    async def test_missing_catalog_item(self, engine: OrderWorkflowEngine, seed: Seed) -> None:
        with pytest.raises(NotFoundError, match="Catalog item not found"):
            await engine.create_generic_request(seed.buyer.id, "nope", "anything")

    async def test_requires_an_admin(
        self, engine: OrderWorkflowEngine, db: Database, seed: Seed
    ) -> None:
        await db.execute("DELETE FROM users WHERE role = 'admin'")
        with pytest.raises(NoFulfillerAvailableError, match="No admin available"):
            await engine.create_generic_request(seed.buyer.id, seed.item.id, "anything")


# =========================================================================
# Reads
# =========================================================================


class TestReads:
    async def test_party_can_read(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        for user_id in (seed.buyer.id, seed.creator.id):
            order = await engine.get_order(placed_order.id, user_id)
            assert order.id == placed_order.id

    async def test_read_by_order_number(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        order = await engine.get_order(placed_order.order_number, seed.buyer.id)
        assert order.id == placed_order.id

    async def test_stranger_and_missing_look_the_same(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError) as stranger:
            await engine.get_order(placed_order.id, seed.stranger.id)
        with pytest.raises(NotFoundOrUnauthorizedError) as missing:
            await engine.get_order("does-not-exist", seed.buyer.id)
        assert stranger.value.message == missing.value.message

    async def test_list_for_buyer_and_fulfiller(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        second = await engine.create_order(seed.buyer.id, seed.one_revision_package.id, "more")
        await engine.transition_by_fulfiller(second.id, seed.creator.id, "accepted")

        assert [o.id for o in await engine.list_for_buyer(seed.buyer.id)] == [
            second.id,
            placed_order.id,
        ]
        assert await engine.list_for_buyer(seed.stranger.id) == []

        accepted = await engine.list_for_fulfiller(seed.creator.id, "accepted")
        assert [o.id for o in accepted] == [second.id]
        assert len(await engine.list_for_fulfiller(seed.creator.id)) == 2


# =========================================================================
# Fulfiller transitions
# =========================================================================


class TestFulfillerTransitions:
    async def test_scenario_a_happy_path(
        self,
        engine: OrderWorkflowEngine,
        seed: Seed,
        sink: RecordingSink,
        placed_order: ServiceOrder,
    ) -> None:
        accepted = await engine.transition_by_fulfiller(
            placed_order.id, seed.creator.id, OrderStatus.ACCEPTED
        )
        assert accepted.status == OrderStatus.ACCEPTED
        assert accepted.accepted_at is not None

        await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "in_progress")
        delivered = await _deliver(engine, placed_order.id, seed.creator.id)
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.delivered_at is not None
        assert delivered.delivery_files == ["deck.pdf"]
        assert delivered.delivery_note == "First draft"

        completed = await engine.transition_by_buyer(placed_order.id, seed.buyer.id, "completed")
        assert completed.status == OrderStatus.COMPLETED
        assert completed.payment_released is True
        assert completed.completed_at is not None

        package = await engine.packages.get(seed.package.id)
        assert package is not None
        assert package.stats.completed == 1
        assert package.stats.revenue == Decimal("100.00")

        assert sink.kinds_for(seed.buyer.id) == [
            NotificationKind.ORDER_ACCEPTED,
            NotificationKind.ORDER_IN_PROGRESS,
            NotificationKind.ORDER_DELIVERED,
        ]
        assert sink.kinds_for(seed.creator.id)[-1] == NotificationKind.ORDER_COMPLETED

    async def test_reject(
        self, engine: OrderWorkflowEngine, seed: Seed, sink: RecordingSink, placed_order: ServiceOrder
    ) -> None:
        order = await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "rejected")
        assert order.status == OrderStatus.REJECTED
        assert order.activity_log[-1].action == ActivityAction.STATUS_REJECTED.value
        assert sink.kinds_for(seed.buyer.id) == [NotificationKind.ORDER_REJECTED]

    async def test_each_transition_appends_one_log_entry(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        expected = [
            ("accepted", ActivityAction.STATUS_ACCEPTED),
            ("in_progress", ActivityAction.STATUS_IN_PROGRESS),
            ("delivered", ActivityAction.STATUS_DELIVERED),
        ]
        length = len(placed_order.activity_log)
        for target, action in expected:
            order = await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, target)
            assert len(order.activity_log) == length + 1
            assert order.activity_log[-1].action == action.value
            assert order.activity_log[-1].performed_by == seed.creator.id
            length += 1

    @pytest.mark.parametrize("target", ["completed", "cancelled", "disputed", "requested"])
    async def test_targets_outside_fulfiller_set(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder, target: str
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="Fulfillers cannot"):
            await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, target)

    async def test_unknown_status_rejected(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="Unknown order status"):
            await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "shipped")

    async def test_skipping_a_step_rejected(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError):
            await _deliver(engine, placed_order.id, seed.creator.id)

    async def test_repeat_accept_fails(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted")
        with pytest.raises(InvalidTransitionError):
            await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted")

    async def test_buyer_cannot_act_as_fulfiller(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.transition_by_fulfiller(placed_order.id, seed.buyer.id, "accepted")

    async def test_other_creator_cannot_act(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.transition_by_fulfiller(placed_order.id, seed.creator2.id, "accepted")


# =========================================================================
# Buyer transitions
# =========================================================================


class TestBuyerTransitions:
    async def test_complete_requires_delivered(
        self, engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="Can only complete delivered orders"):
            await engine.transition_by_buyer(in_progress_order.id, seed.buyer.id, "completed")

    async def test_revision_requires_delivered(
        self, engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="Can only request revision"):
            await engine.transition_by_buyer(
                in_progress_order.id, seed.buyer.id, "revision_requested"
            )

    @pytest.mark.parametrize("target", ["accepted", "delivered", "cancelled", "disputed"])
    async def test_targets_outside_buyer_set(
        self, engine: OrderWorkflowEngine, seed: Seed, delivered_order: ServiceOrder, target: str
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="Buyers cannot"):
            await engine.transition_by_buyer(delivered_order.id, seed.buyer.id, target)

    async def test_creator_cannot_complete(
        self, engine: OrderWorkflowEngine, seed: Seed, delivered_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.transition_by_buyer(delivered_order.id, seed.creator.id, "completed")

    async def test_revision_round_trip(
        self,
        engine: OrderWorkflowEngine,
        seed: Seed,
        sink: RecordingSink,
        delivered_order: ServiceOrder,
    ) -> None:
        order = await engine.transition_by_buyer(
            delivered_order.id, seed.buyer.id, "revision_requested"
        )
        assert order.status == OrderStatus.REVISION_REQUESTED
        assert order.revisions_used == 1
        assert order.activity_log[-1].details == "Revision 1/3 requested"
        assert sink.sent[-1][0] == seed.creator.id
        assert sink.sent[-1][2]["revision_label"] == "revision 1/3"

        redelivered = await _deliver(engine, order.id, seed.creator.id)
        assert redelivered.status == OrderStatus.DELIVERED
        assert redelivered.activity_log[-1].details == "Revision 1 delivered"

    async def test_scenario_b_revision_limit(
        self, engine: OrderWorkflowEngine, seed: Seed
    ) -> None:
        order = await engine.create_order(seed.buyer.id, seed.one_revision_package.id, "logo")
        for target in ("accepted", "in_progress"):
            await engine.transition_by_fulfiller(order.id, seed.creator.id, target)
        await _deliver(engine, order.id, seed.creator.id)

        revised = await engine.transition_by_buyer(order.id, seed.buyer.id, "revision_requested")
        assert revised.revisions_used == 1

        await _deliver(engine, order.id, seed.creator.id)
        with pytest.raises(RevisionLimitExceededError, match="All 1 revisions have been used"):
            await engine.transition_by_buyer(order.id, seed.buyer.id, "revision_requested")

        stored = await engine.load(order.id)
        assert stored.status == OrderStatus.DELIVERED
        assert stored.revisions_used == 1

    async def test_unlimited_revisions(self, engine: OrderWorkflowEngine, seed: Seed) -> None:
        package = await engine.packages.insert(
            ServicePackage(
                creator_id=seed.creator.id,
                catalog_item_id=seed.item.id,
                name="Unlimited",
                slug="unlimited",
                price=10.0,
                delivery_days=1,
                revisions=0,
            )
        )
        order = await engine.create_order(seed.buyer.id, package.id, "iterate")
        for target in ("accepted", "in_progress"):
            await engine.transition_by_fulfiller(order.id, seed.creator.id, target)

        for n in range(1, 5):
            await _deliver(engine, order.id, seed.creator.id)
            order = await engine.transition_by_buyer(order.id, seed.buyer.id, "revision_requested")
            assert order.revisions_used == n
        assert order.activity_log[-1].details == "Revision 4 requested"

    async def test_completion_of_generic_request_skips_package_stats(
        self, engine: OrderWorkflowEngine, services, seed: Seed
    ) -> None:
        order = await engine.create_generic_request(seed.buyer.id, seed.item.id, "custom")
        await services.assignment.reassign(order.id, seed.creator.id, seed.admin.id, price=50)
        await engine.transition_by_fulfiller(order.id, seed.creator.id, "in_progress")
        await _deliver(engine, order.id, seed.creator.id)
        completed = await engine.transition_by_buyer(order.id, seed.buyer.id, "completed")

        assert completed.status == OrderStatus.COMPLETED
        package = await engine.packages.get(seed.package.id)
        assert package is not None
        assert package.stats.completed == 0


# =========================================================================
# Cancellation
# =========================================================================


class TestCancel:
    async def test_buyer_cancels_requested_order(
        self, engine: OrderWorkflowEngine, seed: Seed, sink: RecordingSink, placed_order: ServiceOrder
    ) -> None:
        order = await engine.cancel(placed_order.id, seed.buyer.id, "Changed my mind")
        assert order.status == OrderStatus.CANCELLED
        assert order.activity_log[-1].action == ActivityAction.ORDER_CANCELLED.value
        assert order.activity_log[-1].details == "Changed my mind"

        recipient, kind, payload = sink.sent[-1]
        assert (recipient, kind) == (seed.creator.id, NotificationKind.ORDER_CANCELLED)
        assert payload["reason"] == "Changed my mind"

    async def test_fulfiller_cancel_notifies_buyer(
        self, engine: OrderWorkflowEngine, seed: Seed, sink: RecordingSink, in_progress_order: ServiceOrder
    ) -> None:
        order = await engine.cancel(in_progress_order.id, seed.creator.id)
        assert order.activity_log[-1].details == "Order cancelled"
        assert sink.sent[-1][0] == seed.buyer.id

    async def test_scenario_e_cancel_disputed(
        self, engine: OrderWorkflowEngine, seed: Seed, disputed_order: ServiceOrder
    ) -> None:
        with pytest.raises(DisputeInProgressError, match="Wait for admin resolution"):
            await engine.cancel(disputed_order.id, seed.buyer.id, "give up")

    async def test_scenario_e_cancel_completed(
        self, engine: OrderWorkflowEngine, seed: Seed, delivered_order: ServiceOrder
    ) -> None:
        await engine.transition_by_buyer(delivered_order.id, seed.buyer.id, "completed")
        with pytest.raises(AlreadyTerminalError, match="already completed"):
            await engine.cancel(delivered_order.id, seed.buyer.id)

    async def test_stranger_cannot_cancel(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.cancel(placed_order.id, seed.stranger.id)

    async def test_unassigned_request_cancel_notifies_admins(
        self, engine: OrderWorkflowEngine, seed: Seed, sink: RecordingSink
    ) -> None:
        second_admin = await engine.users.insert(
            User(id="admin-2", name="Abe Admin", role=UserRole.ADMIN)
        )
        order = await engine.create_generic_request(seed.buyer.id, seed.item.id, "custom")
        sink.clear()

        await engine.cancel(order.id, seed.buyer.id, "Found someone else")

        recipients = sorted(recipient for recipient, _, _ in sink.sent)
        assert recipients == [seed.admin.id, second_admin.id]
        assert sink.kinds_for(seed.admin.id) == [NotificationKind.ORDER_CANCELLED]
        assert sink.kinds_for(engine.settings.unassigned_pool_id) == []
        assert sink.sent[0][2]["reason"] == "Found someone else"

    async def test_assigned_request_cancel_notifies_assignee(
        self, engine: OrderWorkflowEngine, services, seed: Seed, sink: RecordingSink
    ) -> None:
        order = await engine.create_generic_request(seed.buyer.id, seed.item.id, "custom")
        await services.assignment.reassign(order.id, seed.creator2.id, seed.admin.id)
        sink.clear()

        await engine.cancel(order.id, seed.buyer.id)

        assert [(r, k) for r, k, _ in sink.sent] == [
            (seed.creator2.id, NotificationKind.ORDER_CANCELLED)
        ]

    async def test_admin_lookup_failure_does_not_block_cancel(
        self,
        engine: OrderWorkflowEngine,
        seed: Seed,
        sink: RecordingSink,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        order = await engine.create_generic_request(seed.buyer.id, seed.item.id, "custom")

        async def broken(*args, **kwargs):
            raise RuntimeError("directory offline")

        monkeypatch.setattr(engine.users, "list_by_roles", broken)
        sink.clear()

        cancelled = await engine.cancel(order.id, seed.buyer.id)
        assert cancelled.status == OrderStatus.CANCELLED
        assert sink.sent == []


# =========================================================================
# Disputes
# =========================================================================


class TestOpenDispute:
    async def test_open_from_in_progress(
        self, seed: Seed, sink: RecordingSink, disputed_order: ServiceOrder
    ) -> None:
        assert disputed_order.status == OrderStatus.DISPUTED
        assert disputed_order.dispute is not None
        assert disputed_order.dispute.reason == "no progress in 2 weeks"
        assert disputed_order.dispute.opened_by == seed.buyer.id
        assert disputed_order.dispute.outcome is None
        assert disputed_order.activity_log[-1].action == ActivityAction.DISPUTE_OPENED.value
        assert sink.sent[-1][:2] == (seed.creator.id, NotificationKind.DISPUTE_OPENED)

    async def test_cannot_dispute_requested(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError, match="active or delivered"):
            await engine.open_dispute(placed_order.id, seed.buyer.id, "too slow")

    async def test_only_buyer_can_dispute(
        self, engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.open_dispute(in_progress_order.id, seed.creator.id, "buyer is rude")

    async def test_frozen_while_disputed(
        self, engine: OrderWorkflowEngine, seed: Seed, disputed_order: ServiceOrder
    ) -> None:
        with pytest.raises(InvalidTransitionError):
            await _deliver(engine, disputed_order.id, seed.creator.id)
        with pytest.raises(InvalidTransitionError):
            await engine.transition_by_buyer(disputed_order.id, seed.buyer.id, "completed")


# =========================================================================
# Messaging
# =========================================================================


class TestMessaging:
    async def test_parties_can_message_without_status_change(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        await engine.send_message(placed_order.id, seed.buyer.id, "Hi!", ["brief.pdf"])
        order = await engine.send_message(placed_order.id, seed.creator.id, "Hello")

        assert order.status == OrderStatus.REQUESTED
        assert [m.sender_id for m in order.messages] == [seed.buyer.id, seed.creator.id]
        assert order.messages[0].attachments == ["brief.pdf"]
        assert len(order.activity_log) == len(placed_order.activity_log)

    async def test_stranger_cannot_message(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        with pytest.raises(NotFoundOrUnauthorizedError):
            await engine.send_message(placed_order.id, seed.stranger.id, "spam")

    async def test_engine_allows_messages_on_terminal_orders(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        await engine.cancel(placed_order.id, seed.buyer.id)
        order = await engine.send_message(placed_order.id, seed.creator.id, "Sorry to see you go")
        assert len(order.messages) == 1


# =========================================================================
# Atomicity and concurrency
# =========================================================================


class TestNoPartialWrites:
    @pytest.mark.parametrize("target", ["accepted", "in_progress", "rejected"])
    async def test_failed_fulfiller_guard_leaves_order_untouched(
        self, engine: OrderWorkflowEngine, seed: Seed, delivered_order: ServiceOrder, target: str
    ) -> None:
        before = await engine.load(delivered_order.id)
        with pytest.raises(InvalidTransitionError):
            await engine.transition_by_fulfiller(delivered_order.id, seed.creator.id, target)
        after = await engine.load(delivered_order.id)
        assert _snapshot(after) == _snapshot(before)

    async def test_failed_revision_guard_leaves_order_untouched(
        self, engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
    ) -> None:
        before = await engine.load(in_progress_order.id)
        with pytest.raises(InvalidTransitionError):
            await engine.transition_by_buyer(
                in_progress_order.id, seed.buyer.id, "revision_requested"
            )
        assert _snapshot(await engine.load(in_progress_order.id)) == _snapshot(before)

    async def test_version_bumps_once_per_save(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        assert placed_order.version == 0
        order = await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted")
        assert order.version == 1
        assert (await engine.load(placed_order.id)).version == 1


class TestConcurrency:
    async def test_double_accept_only_one_wins(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        results = await asyncio.gather(
            engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted"),
            engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted"),
            return_exceptions=True,
        )
        successes = [r for r in results if isinstance(r, ServiceOrder)]
        failures = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(successes) == 1
        assert len(failures) == 1

        stored = await engine.load(placed_order.id)
        accepted_entries = [
            e for e in stored.activity_log if e.action == ActivityAction.STATUS_ACCEPTED.value
        ]
        assert len(accepted_entries) == 1

    async def test_complete_races_revision_request(
        self, engine: OrderWorkflowEngine, seed: Seed, delivered_order: ServiceOrder
    ) -> None:
        results = await asyncio.gather(
            engine.transition_by_buyer(delivered_order.id, seed.buyer.id, "completed"),
            engine.transition_by_buyer(delivered_order.id, seed.buyer.id, "revision_requested"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, ServiceOrder) for r in results) == 1
        assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1

        stored = await engine.load(delivered_order.id)
        assert stored.status in (OrderStatus.COMPLETED, OrderStatus.REVISION_REQUESTED)
        assert stored.version == delivered_order.version + 1
        assert stored.activity_log[-1].action in (
            ActivityAction.STATUS_COMPLETED.value,
            ActivityAction.REVISION_REQUESTED.value,
        )

    async def test_concurrent_messages_are_all_kept(
        self, engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
    ) -> None:
        await asyncio.gather(
            *(
                engine.send_message(placed_order.id, seed.buyer.id, f"message {n}")
                for n in range(5)
            )
        )
        stored = await engine.load(placed_order.id)
        assert sorted(m.message for m in stored.messages) == [f"message {n}" for n in range(5)]


# =========================================================================
# Admin guard and helpers
# =========================================================================


class TestRequireAdmin:
    async def test_admin_passes(self, engine: OrderWorkflowEngine, seed: Seed) -> None:
        await engine.require_admin(seed.admin.id)

    @pytest.mark.parametrize("user_id", ["creator-1", "buyer-1", "nobody"])
    async def test_others_forbidden(
        self, engine: OrderWorkflowEngine, seed: Seed, user_id: str
    ) -> None:
        with pytest.raises(ForbiddenError):
            await engine.require_admin(user_id)

    async def test_load_missing(self, engine: OrderWorkflowEngine) -> None:
        with pytest.raises(NotFoundError, match="Service order not found"):
            await engine.load("missing")


class TestCoerceStatus:
    def test_passes_enum_through(self) -> None:
        assert coerce_status(OrderStatus.DELIVERED) is OrderStatus.DELIVERED

    def test_parses_string(self) -> None:
        assert coerce_status("revision_requested") is OrderStatus.REVISION_REQUESTED

    def test_rejects_unknown(self) -> None:
        with pytest.raises(InvalidTransitionError):
            coerce_status("DELIVERED")
