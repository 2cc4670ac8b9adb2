"""Transport-agnostic request handlers for service orders.

Each handler takes the pre-verified ``ActorContext`` and the decoded
request body, calls into the services, and returns ``(HTTPStatus,
envelope)``.  Typed workflow errors become 4xx envelopes carrying the
guard message; anything unexpected propagates to the HTTP layer.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field, ValidationError

from config.settings import Settings
from orderflow.app import Services
from orderflow.catalog.packages import PackageDraft
from orderflow.errors import ForbiddenError, MessagingClosedError, OrderflowError
from orderflow.models.schemas import (
    ActorContext,
    DeliveryPayload,
    Money,
    OrderFilters,
    OrderStatus,
    ServiceOrder,
    UserRole,
)
from orderflow.orchestrator.engine import coerce_status
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="api")

Response = tuple[HTTPStatus, dict[str, Any]]


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateOrderRequest(BaseModel):
    package_id: str
    requirements: str = Field(min_length=1)
    attachments: list[str] = Field(default_factory=list)


class CustomizationRequest(BaseModel):
    catalog_item_id: str
    requirements: str = Field(min_length=1)
    attachments: list[str] = Field(default_factory=list)


class MessageRequest(BaseModel):
    message: str = Field(min_length=1)
    attachments: list[str] = Field(default_factory=list)


class FulfillerStatusRequest(BaseModel):
    status: str
    delivery_files: list[str] = Field(default_factory=list)
    delivery_note: str | None = None


class BuyerStatusRequest(BaseModel):
    status: str


class CancelRequest(BaseModel):
    reason: str | None = None


class DisputeRequest(BaseModel):
    reason: str = Field(min_length=1)


class ResolveRequest(BaseModel):
    outcome: str
    resolution: str = ""


class ReassignRequest(BaseModel):
    assigned_creator_id: str
    price: Money | None = None


class PackageActiveRequest(BaseModel):
    active: bool


class ListQuery(BaseModel):
    status: str | None = None
    is_generic_request: bool | None = None
    unassigned: bool = False
    overdue: bool = False


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------

def ok(data: Any, status: HTTPStatus = HTTPStatus.OK) -> Response:
    return status, {"success": True, "data": data}


def fail(status: HTTPStatus, code: str, message: str, **extra: Any) -> Response:
    error: dict[str, Any] = {"code": code, "message": message}
    error.update(extra)
    return status, {"success": False, "error": error}


def dump(order: ServiceOrder) -> dict[str, Any]:
    return order.model_dump(mode="json")


class OrderController:
    """Service order endpoints, independent of the HTTP server."""

    def __init__(self, services: Services, settings: Settings) -> None:
        self._services = services
        self._engine = services.engine
        self._settings = settings

    @property
    def payments_enabled(self) -> bool:
        return self._services.payments.enabled

    async def handle(self, handler: Callable[[], Awaitable[Response]]) -> Response:
        """Run *handler*, translating validation and workflow errors."""
        try:
            return await handler()
        except ValidationError as exc:
            return fail(
                HTTPStatus.BAD_REQUEST,
                "validation_error",
                "Request body is invalid",
                details=exc.errors(include_url=False, include_context=False),
            )
        except OrderflowError as exc:
            log.info(
                "api.rejected",
                code=exc.code,
                status=int(exc.status_code),
                message=exc.message,
            )
            return fail(exc.status_code, **exc.to_dict())

    @staticmethod
    def _require_admin(actor: ActorContext) -> None:
        if not actor.is_admin:
            raise ForbiddenError("Admin privileges required")

    # ------------------------------------------------------------------
    # Buyer entry points
    # ------------------------------------------------------------------

    async def create_order(self, actor: ActorContext, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = CreateOrderRequest.model_validate(body)
            order = await self._engine.create_order(
                actor.user_id, req.package_id, req.requirements, req.attachments
            )
            return ok(dump(order), HTTPStatus.CREATED)

        return await self.handle(run)

    async def request_customization(self, actor: ActorContext, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = CustomizationRequest.model_validate(body)
            order = await self._engine.create_generic_request(
                actor.user_id, req.catalog_item_id, req.requirements, req.attachments
            )
            return ok(dump(order), HTTPStatus.CREATED)

        return await self.handle(run)

    async def update_status_by_buyer(
        self, actor: ActorContext, order_id: str, body: dict[str, Any]
    ) -> Response:
        async def run() -> Response:
            req = BuyerStatusRequest.model_validate(body)
            order = await self._engine.transition_by_buyer(order_id, actor.user_id, req.status)
            return ok(dump(order))

        return await self.handle(run)

    async def open_dispute(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = DisputeRequest.model_validate(body)
            order = await self._engine.open_dispute(order_id, actor.user_id, req.reason)
            return ok(dump(order))

        return await self.handle(run)

    async def begin_checkout(self, actor: ActorContext, order_id: str) -> Response:
        async def run() -> Response:
            session = await self._services.payments.begin_checkout(order_id, actor.user_id)
            return ok(session.model_dump())

        return await self.handle(run)

    # ------------------------------------------------------------------
    # Either party
    # ------------------------------------------------------------------

    async def get_order(self, actor: ActorContext, order_id: str) -> Response:
        async def run() -> Response:
            if actor.is_admin:
                order = await self._engine.load(order_id)
            else:
                order = await self._engine.get_order(order_id, actor.user_id)
            return ok(dump(order))

        return await self.handle(run)

    async def send_message(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = MessageRequest.model_validate(body)
            if self._settings.block_messages_on_terminal:
                current = await self._engine.get_order(order_id, actor.user_id)
                if current.is_terminal:
                    raise MessagingClosedError(
                        f"Messaging is closed on {current.status.value} orders"
                    )
            order = await self._engine.send_message(
                order_id, actor.user_id, req.message, req.attachments
            )
            return ok(dump(order))

        return await self.handle(run)

    async def cancel(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = CancelRequest.model_validate(body)
            order = await self._engine.cancel(order_id, actor.user_id, req.reason)
            return ok(dump(order))

        return await self.handle(run)

    async def my_orders(self, actor: ActorContext, query: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = ListQuery.model_validate(query)
            if actor.role in (UserRole.CREATOR, UserRole.ADMIN):
                orders = await self._engine.list_for_fulfiller(actor.user_id, req.status)
            else:
                orders = await self._engine.list_for_buyer(actor.user_id)
            return ok([dump(o) for o in orders])

        return await self.handle(run)

    # ------------------------------------------------------------------
    # Fulfiller entry points
    # ------------------------------------------------------------------

    async def update_status(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            req = FulfillerStatusRequest.model_validate(body)
            order = await self._engine.transition_by_fulfiller(
                order_id,
                actor.user_id,
                req.status,
                DeliveryPayload(
                    delivery_files=req.delivery_files, delivery_note=req.delivery_note
                ),
            )
            return ok(dump(order))

        return await self.handle(run)

    async def create_package(self, actor: ActorContext, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            if actor.role not in (UserRole.CREATOR, UserRole.ADMIN):
                raise ForbiddenError("Only creators can publish service packages")
            draft = PackageDraft.model_validate(body)
            package = await self._services.packages.create_package(actor.user_id, draft)
            return ok(package.model_dump(mode="json"), HTTPStatus.CREATED)

        return await self.handle(run)

    async def my_packages(self, actor: ActorContext) -> Response:
        async def run() -> Response:
            packages = await self._services.packages.list_creator_packages(actor.user_id)
            return ok([p.model_dump(mode="json") for p in packages])

        return await self.handle(run)

    async def set_package_active(
        self, actor: ActorContext, package_id: str, body: dict[str, Any]
    ) -> Response:
        async def run() -> Response:
            req = PackageActiveRequest.model_validate(body)
            package = await self._services.packages.set_active(
                package_id, actor.user_id, req.active
            )
            return ok(package.model_dump(mode="json"))

        return await self.handle(run)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def packages_for_item(self, catalog_item_id: str) -> Response:
        async def run() -> Response:
            packages = await self._services.packages.list_packages_for_item(catalog_item_id)
            return ok([p.model_dump(mode="json") for p in packages])

        return await self.handle(run)

    async def package_by_slug(self, slug: str) -> Response:
        async def run() -> Response:
            package = await self._services.packages.get_package_by_slug(slug)
            return ok(package.model_dump(mode="json"))

        return await self.handle(run)

    async def confirm_payment(self, payload: bytes, signature: str | None) -> Response:
        """Apply a signed payment-provider webhook."""

        async def run() -> Response:
            order = await self._services.payments.handle_webhook(payload, signature)
            if order is None:
                return ok({"received": True, "order_id": None})
            return ok({"received": True, "order_id": order.id, "is_paid": order.is_paid})

        return await self.handle(run)

    # ------------------------------------------------------------------
    # Admin entry points
    # ------------------------------------------------------------------

    async def all_orders(self, actor: ActorContext, query: dict[str, Any]) -> Response:
        async def run() -> Response:
            self._require_admin(actor)
            req = ListQuery.model_validate(query)
            filters = OrderFilters(
                status=coerce_status(req.status) if req.status else None,
                is_generic_request=req.is_generic_request,
                unassigned=req.unassigned,
                overdue=req.overdue,
            )
            orders = await self._engine.list_all(filters)
            return ok([dump(o) for o in orders])

        return await self.handle(run)

    async def available_creators(self, actor: ActorContext) -> Response:
        async def run() -> Response:
            self._require_admin(actor)
            users = await self._services.assignment.list_available_fulfillers()
            return ok([u.model_dump(mode="json", include={"id", "name", "email", "role"}) for u in users])

        return await self.handle(run)

    async def reassign(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            self._require_admin(actor)
            req = ReassignRequest.model_validate(body)
            order = await self._services.assignment.reassign(
                order_id, req.assigned_creator_id, actor.user_id, req.price
            )
            return ok(dump(order))

        return await self.handle(run)

    async def resolve_dispute(self, actor: ActorContext, order_id: str, body: dict[str, Any]) -> Response:
        async def run() -> Response:
            self._require_admin(actor)
            req = ResolveRequest.model_validate(body)
            order = await self._services.disputes.resolve(
                order_id, actor.user_id, req.resolution, req.outcome
            )
            return ok(dump(order))

        return await self.handle(run)

    async def status_counts(self) -> dict[str, int]:
        counts = await self._engine.orders.count_by_status()
        return {status.value: counts.get(status.value, 0) for status in OrderStatus}
