"""Shared pytest fixtures for the Orderflow test suite.

Provides an in-memory database, test settings, recording notification
sinks, a fake payment gateway, and a seeded marketplace (users, a catalog
item, and two packages).  Every fixture runs without network access.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest

# ---------------------------------------------------------------------------
# Ensure the project root is on sys.path so that ``import orderflow.*``
# resolves correctly regardless of how pytest is invoked.  Log files go to a
# temp directory instead of the project's data/ folder.
# ---------------------------------------------------------------------------
_PROJECT_ROOT = str(Path(__file__).resolve().parents[1])
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)
os.environ.setdefault("ORDERFLOW_LOG_DIR", str(Path(tempfile.gettempdir()) / "orderflow-test-logs"))

from config.settings import Settings
from orderflow.app import Services, build_services
from orderflow.errors import PaymentVerificationError
from orderflow.models.database import Database
from orderflow.models.schemas import (
    CatalogItem,
    ServiceOrder,
    ServicePackage,
    User,
    UserRole,
)
from orderflow.notifications.templates import NotificationKind
from orderflow.orchestrator.engine import OrderWorkflowEngine
from orderflow.orchestrator.payments import CheckoutSession, PaymentConfirmation


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class RecordingSink:
    """Notification sink that remembers everything it was sent."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, NotificationKind, dict[str, Any]]] = []

    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        self.sent.append((recipient_id, kind, payload))

    def kinds_for(self, recipient_id: str) -> list[NotificationKind]:
        return [kind for rid, kind, _ in self.sent if rid == recipient_id]

    def clear(self) -> None:
        self.sent.clear()


class FailingSink:
    """Notification sink whose every send blows up."""

    def __init__(self) -> None:
        self.calls = 0

    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        self.calls += 1
        raise RuntimeError("notification backend down")


class SlowSink:
    """Notification sink that never finishes within a test timeout."""

    async def send(
        self, recipient_id: str, kind: NotificationKind, payload: dict[str, Any]
    ) -> None:
        await asyncio.sleep(10)


class FakeGateway:
    """Payment gateway returning predictable checkout sessions.

    Webhook payloads are plain JSON ``{"order_id": ..., "session_id": ...}``
    signed with the literal signature ``"valid"``.
    """

    SIGNATURE = "valid"

    def __init__(self) -> None:
        self.sessions: list[tuple[str, Decimal]] = []

    async def create_session(self, order: ServiceOrder) -> CheckoutSession:
        self.sessions.append((order.order_number, order.price))
        session_id = f"sess_{len(self.sessions)}"
        return CheckoutSession(session_id=session_id, url=f"https://pay.test/{session_id}")

    def parse_webhook(self, payload: bytes, signature: str | None) -> PaymentConfirmation | None:
        if signature != self.SIGNATURE:
            raise PaymentVerificationError("Invalid payment signature")
        event = json.loads(payload)
        if event.get("type") != "checkout.session.completed":
            return None
        return PaymentConfirmation(order_id=event["order_id"], session_id=event["session_id"])

    @staticmethod
    def payload(order_id: str, session_id: str) -> bytes:
        return json.dumps(
            {"type": "checkout.session.completed", "order_id": order_id, "session_id": session_id}
        ).encode("utf-8")


@dataclass
class Seed:
    admin: User
    creator: User
    creator2: User
    buyer: User
    stranger: User
    item: CatalogItem
    package: ServicePackage
    one_revision_package: ServicePackage


# ---------------------------------------------------------------------------
# Database and settings
# ---------------------------------------------------------------------------

@pytest.fixture
async def db() -> AsyncGenerator[Database, None]:
    """Yield a connected, migrated in-memory Database and close it after use."""
    database = Database(db_path=":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def settings() -> Settings:
    """Return Settings independent of any local ``.env`` file."""
    return Settings(
        _env_file=None,
        db_path=":memory:",
        log_level="DEBUG",
        notification_timeout_seconds=0.5,
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def services(
    db: Database, settings: Settings, sink: RecordingSink, gateway: FakeGateway
) -> Services:
    return build_services(db, settings, sink=sink, gateway=gateway)


@pytest.fixture
def engine(services: Services) -> OrderWorkflowEngine:
    return services.engine


@pytest.fixture
async def seed(engine: OrderWorkflowEngine) -> Seed:
    """Insert users, a catalog item, and two packages owned by ``creator``."""
    admin = await engine.users.insert(User(id="admin-1", name="Ada Admin", role=UserRole.ADMIN))
    creator = await engine.users.insert(
        User(id="creator-1", name="Cora Creator", role=UserRole.CREATOR)
    )
    creator2 = await engine.users.insert(
        User(id="creator-2", name="Cyd Creator", role=UserRole.CREATOR)
    )
    buyer = await engine.users.insert(User(id="buyer-1", name="Bo Buyer", role=UserRole.BUYER))
    stranger = await engine.users.insert(
        User(id="buyer-2", name="Sam Stranger", role=UserRole.BUYER)
    )
    item = await engine.catalog.insert(
        CatalogItem(id="item-1", creator_id=creator.id, title="Pitch Deck Template")
    )
    package = await engine.packages.insert(
        ServicePackage(
            id="pkg-standard",
            creator_id=creator.id,
            catalog_item_id=item.id,
            name="Standard deck",
            slug="standard-deck",
            price=Decimal("100.00"),
            delivery_days=5,
            revisions=3,
        )
    )
    one_revision = await engine.packages.insert(
        ServicePackage(
            id="pkg-basic",
            creator_id=creator.id,
            catalog_item_id=item.id,
            name="Basic deck",
            slug="basic-deck",
            price=Decimal("40.00"),
            delivery_days=2,
            revisions=1,
        )
    )
    return Seed(
        admin=admin,
        creator=creator,
        creator2=creator2,
        buyer=buyer,
        stranger=stranger,
        item=item,
        package=package,
        one_revision_package=one_revision,
    )


# ---------------------------------------------------------------------------
# Orders at various points of the lifecycle
# ---------------------------------------------------------------------------

@pytest.fixture
async def placed_order(engine: OrderWorkflowEngine, seed: Seed) -> ServiceOrder:
    """A freshly placed order from the $100 package (status ``requested``)."""
    return await engine.create_order(
        seed.buyer.id, seed.package.id, "Twelve slides for a seed round"
    )


@pytest.fixture
async def in_progress_order(
    engine: OrderWorkflowEngine, seed: Seed, placed_order: ServiceOrder
) -> ServiceOrder:
    await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "accepted")
    return await engine.transition_by_fulfiller(placed_order.id, seed.creator.id, "in_progress")


@pytest.fixture
async def delivered_order(
    engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
) -> ServiceOrder:
    return await engine.transition_by_fulfiller(in_progress_order.id, seed.creator.id, "delivered")


@pytest.fixture
async def disputed_order(
    engine: OrderWorkflowEngine, seed: Seed, in_progress_order: ServiceOrder
) -> ServiceOrder:
    return await engine.open_dispute(
        in_progress_order.id, seed.buyer.id, "no progress in 2 weeks"
    )
