"""Pydantic models and enums for the service order domain.

These schemas are the single source of truth for data shapes used across
the application: stored documents, request payloads, and the values the
engine hands back to callers.  A ``ServiceOrder`` is the aggregate root;
its dispute, activity log, and message thread live inside the same
document so a transition and its log line are always written together.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OrderStatus(str, Enum):
    """Lifecycle stages of a service order."""

    REQUESTED = "requested"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class DisputeOutcome(str, Enum):
    """Binding outcomes an admin can choose when closing a dispute."""

    REFUND = "refund"
    RELEASE_PAYMENT = "release_payment"
    PARTIAL_REFUND = "partial_refund"
    REDO = "redo"


class UserRole(str, Enum):
    BUYER = "buyer"
    CREATOR = "creator"
    ADMIN = "admin"


class ActivityAction(str, Enum):
    """Values written to ``ActivityEntry.action``."""

    ORDER_CREATED = "order_created"
    STATUS_ACCEPTED = "status_accepted"
    STATUS_REJECTED = "status_rejected"
    STATUS_IN_PROGRESS = "status_in_progress"
    STATUS_DELIVERED = "status_delivered"
    STATUS_COMPLETED = "status_completed"
    REVISION_REQUESTED = "revision_requested"
    ORDER_CANCELLED = "order_cancelled"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    CREATOR_ASSIGNED = "creator_assigned"
    PRICE_SET = "price_set"
    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_RECEIVED = "payment_received"


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REJECTED}
)


def _utcnow() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


_CENT = Decimal("0.01")


def to_money(amount: Any) -> Decimal:
    """Quantize *amount* to whole cents, rounding half up."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"not a money amount: {amount!r}") from None
    if not value.is_finite():
        raise ValueError(f"not a money amount: {amount!r}")
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def to_cents(amount: Any) -> int:
    """Whole cents in *amount*, as stored in counters and sent to the payment provider."""
    return int(to_money(amount) * 100)


# Non-negative amount in cents; serialised as a string ("19.99") in JSON.
Money = Annotated[Decimal, BeforeValidator(to_money), Field(ge=0)]

ZERO = Decimal("0.00")


# ---------------------------------------------------------------------------
# Parties and catalog
# ---------------------------------------------------------------------------

class User(BaseModel):
    """A marketplace account as seen by the workflow (role lookups only)."""

    id: str = Field(default_factory=_new_id)
    name: str
    email: str = ""
    role: UserRole = UserRole.BUYER
    created_at: datetime = Field(default_factory=_utcnow)


class ActorContext(BaseModel):
    """Pre-verified identity of whoever is calling."""

    user_id: str
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class CatalogItem(BaseModel):
    """A template listed in the catalog that services and requests refer to."""

    id: str = Field(default_factory=_new_id)
    creator_id: str
    title: str
    slug: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class PackageStats(BaseModel):
    orders: int = 0
    completed: int = 0
    revenue: Money = ZERO


class ServicePackage(BaseModel):
    """A creator-published offer that new orders are instantiated from."""

    id: str = Field(default_factory=_new_id)
    creator_id: str
    catalog_item_id: str
    name: str = Field(min_length=1)
    slug: str = ""
    description: str = ""
    price: Money
    delivery_days: int = Field(ge=1)
    revisions: int = Field(default=0, ge=0)  # 0 = unlimited
    features: list[str] = Field(default_factory=list)
    requirements: str = ""
    is_active: bool = True
    stats: PackageStats = Field(default_factory=PackageStats)
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Order aggregate
# ---------------------------------------------------------------------------

class ActivityEntry(BaseModel):
    """One line of an order's append-only audit trail."""

    action: str
    performed_by: str
    details: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class OrderMessage(BaseModel):
    sender_id: str
    message: str
    attachments: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class Dispute(BaseModel):
    """An open or closed grievance embedded in its order."""

    reason: str
    opened_by: str
    opened_at: datetime = Field(default_factory=_utcnow)
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    outcome: DisputeOutcome | None = None

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not None


class ServiceOrder(BaseModel):
    """A custom work engagement between a buyer and a fulfiller.

    ``creator_id`` is the original fulfiller; ``assigned_creator_id`` is set
    only by admin reassignment, after which both ids may act on the order.
    Commercial terms are copied from the package when the order is created
    and never re-read from it.
    """

    id: str = Field(default_factory=_new_id)
    order_number: str = ""
    package_id: str | None = None
    catalog_item_id: str | None = None
    buyer_id: str
    creator_id: str
    assigned_creator_id: str | None = None
    is_generic_request: bool = False

    package_name: str = ""
    price: Money = ZERO
    delivery_days: int = Field(default=1, ge=1)
    revisions: int = Field(default=0, ge=0)  # 0 = unlimited
    revisions_used: int = Field(default=0, ge=0)

    requirements: str = Field(min_length=1)
    attachments: list[str] = Field(default_factory=list)

    status: OrderStatus = OrderStatus.REQUESTED

    delivery_files: list[str] = Field(default_factory=list)
    delivery_note: str | None = None
    delivered_at: datetime | None = None

    due_date: datetime | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None

    payment_session_id: str | None = None
    is_paid: bool = False
    paid_at: datetime | None = None
    platform_fee: Money = ZERO
    creator_payout: Money = ZERO
    payment_released: bool = False

    dispute: Dispute | None = None
    activity_log: list[ActivityEntry] = Field(default_factory=list)
    messages: list[OrderMessage] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 0

    @model_validator(mode="after")
    def _check_origin(self) -> "ServiceOrder":
        if self.is_generic_request and self.package_id is not None:
            raise ValueError("generic requests cannot reference a package")
        if not self.is_generic_request and self.package_id is None:
            raise ValueError("package orders must reference a package")
        return self

    # -- parties -----------------------------------------------------------

    @property
    def fulfiller_ids(self) -> tuple[str, ...]:
        if self.assigned_creator_id:
            return (self.creator_id, self.assigned_creator_id)
        return (self.creator_id,)

    @property
    def active_fulfiller_id(self) -> str:
        """The fulfiller notifications go to: the assignee when there is one."""
        return self.assigned_creator_id or self.creator_id

    def is_fulfiller(self, user_id: str) -> bool:
        return user_id in self.fulfiller_ids

    def is_party(self, user_id: str) -> bool:
        return user_id == self.buyer_id or self.is_fulfiller(user_id)

    # -- state -------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def revisions_remaining(self) -> int | None:
        """Revisions left, or ``None`` when the allowance is unlimited."""
        if self.revisions == 0:
            return None
        return max(self.revisions - self.revisions_used, 0)

    def is_overdue(self, now: datetime | None = None) -> bool:
        """Advisory only: nothing transitions an order because of this."""
        if self.due_date is None or self.is_terminal:
            return False
        return (now or _utcnow()) > self.due_date

    def log(self, action: ActivityAction | str, performed_by: str, details: str = "") -> ActivityEntry:
        """Append an entry to the activity log and return it."""
        value = action.value if isinstance(action, ActivityAction) else action
        entry = ActivityEntry(action=value, performed_by=performed_by, details=details)
        self.activity_log.append(entry)
        return entry


def due_date_from(start: datetime, delivery_days: int) -> datetime:
    return start + timedelta(days=delivery_days)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class DeliveryPayload(BaseModel):
    """What a fulfiller hands over when marking an order delivered."""

    delivery_files: list[str] = Field(default_factory=list)
    delivery_note: str | None = None


class OrderFilters(BaseModel):
    """Admin listing filters; unset fields do not constrain the result."""

    status: OrderStatus | None = None
    is_generic_request: bool | None = None
    unassigned: bool = False
    overdue: bool = False
