"""FastAPI application over ``OrderController``.

Authentication happens upstream; the verified caller arrives in the
``X-User-Id`` and ``X-User-Role`` headers and is resolved once per request
by the ``current_actor`` dependency.  Every response uses the controller's
``{"success": ..., "data" | "error": ...}`` envelope, including framework
errors such as unknown routes.
"""

from __future__ import annotations

import json
import time
import uuid
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response as StarletteResponse

from config.settings import Settings
from orderflow.api.controller import OrderController, Response, fail
from orderflow.app import build_services
from orderflow.errors import InvalidRequestError, OrderflowError, UnauthenticatedError
from orderflow.models.database import Database
from orderflow.models.schemas import ActorContext
from orderflow.notifications.sinks import NotificationSink
from orderflow.orchestrator.payments import PaymentGateway
from orderflow.utils.logger import get_logger, request_context

log = get_logger(__name__, component="api")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_controller(request: Request) -> OrderController:
    return request.app.state.controller


async def current_actor(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> ActorContext:
    """The caller identity forwarded by the authenticating proxy."""
    if not x_user_id or not x_user_role:
        raise UnauthenticatedError("Missing caller identity")
    try:
        return ActorContext(user_id=x_user_id, role=x_user_role)
    except ValidationError:
        raise UnauthenticatedError(f"Unknown caller role: {x_user_role!r}") from None


async def json_body(request: Request) -> dict[str, Any]:
    """Decode the request body as a JSON object; an empty body is ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidRequestError("Body is not valid JSON") from None
    if not isinstance(body, dict):
        raise InvalidRequestError("Body must be a JSON object")
    return body


def _send(response: Response) -> JSONResponse:
    status, envelope = response
    return JSONResponse(status_code=int(status), content=envelope)


Controller = Depends(get_controller)
Caller = Depends(current_actor)
JsonBody = Depends(json_body)


# ---------------------------------------------------------------------------
# Service orders
# ---------------------------------------------------------------------------

orders = APIRouter(prefix="/service-orders", tags=["service-orders"])


@orders.post("")
async def create_order(
    actor: ActorContext = Caller, body: dict[str, Any] = JsonBody, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.create_order(actor, body))


@orders.post("/custom")
async def request_customization(
    actor: ActorContext = Caller, body: dict[str, Any] = JsonBody, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.request_customization(actor, body))


@orders.get("/mine")
async def my_orders(
    request: Request, actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.my_orders(actor, dict(request.query_params)))


@orders.get("")
async def all_orders(
    request: Request, actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.all_orders(actor, dict(request.query_params)))


@orders.get("/creators")
async def available_creators(
    actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.available_creators(actor))


@orders.get("/{order_id}")
async def get_order(
    order_id: str, actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.get_order(actor, order_id))


@orders.post("/{order_id}/messages")
async def send_message(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.send_message(actor, order_id, body))


@orders.patch("/{order_id}/status")
async def update_status(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.update_status(actor, order_id, body))


@orders.patch("/{order_id}/buyer-status")
async def update_status_by_buyer(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.update_status_by_buyer(actor, order_id, body))


@orders.post("/{order_id}/cancel")
async def cancel(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.cancel(actor, order_id, body))


@orders.post("/{order_id}/dispute")
async def open_dispute(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.open_dispute(actor, order_id, body))


@orders.post("/{order_id}/resolve")
async def resolve_dispute(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.resolve_dispute(actor, order_id, body))


@orders.post("/{order_id}/assign")
async def reassign(
    order_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.reassign(actor, order_id, body))


@orders.post("/{order_id}/checkout")
async def begin_checkout(
    order_id: str, actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.begin_checkout(actor, order_id))


# ---------------------------------------------------------------------------
# Service packages
# ---------------------------------------------------------------------------

packages = APIRouter(prefix="/service-packages", tags=["service-packages"])


@packages.post("")
async def create_package(
    actor: ActorContext = Caller, body: dict[str, Any] = JsonBody, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.create_package(actor, body))


@packages.get("")
async def packages_for_item(
    catalog_item_id: str, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.packages_for_item(catalog_item_id))


@packages.get("/mine")
async def my_packages(
    actor: ActorContext = Caller, c: OrderController = Controller
) -> JSONResponse:
    return _send(await c.my_packages(actor))


@packages.get("/{slug}")
async def package_by_slug(slug: str, c: OrderController = Controller) -> JSONResponse:
    return _send(await c.package_by_slug(slug))


@packages.patch("/{package_id}/active")
async def set_package_active(
    package_id: str,
    actor: ActorContext = Caller,
    body: dict[str, Any] = JsonBody,
    c: OrderController = Controller,
) -> JSONResponse:
    return _send(await c.set_package_active(actor, package_id, body))


# ---------------------------------------------------------------------------
# Provider webhooks and health
# ---------------------------------------------------------------------------

webhooks = APIRouter(prefix="/webhooks", tags=["webhooks"])


@webhooks.post("/payments")
async def payment_webhook(request: Request, c: OrderController = Controller) -> JSONResponse:
    payload = await request.body()
    return _send(await c.confirm_payment(payload, request.headers.get("stripe-signature")))


health = APIRouter(tags=["health"])


@health.get("/health")
async def health_check(request: Request, c: OrderController = Controller) -> dict[str, Any]:
    return {
        "status": "ok",
        "uptime_seconds": round(time.monotonic() - request.app.state.started, 1),
        "payments_enabled": c.payments_enabled,
        "orders": await c.status_counts(),
    }


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

async def _workflow_error(request: Request, exc: OrderflowError) -> JSONResponse:
    log.info("api.rejected", code=exc.code, status=int(exc.status_code), message=exc.message)
    return _send(fail(exc.status_code, **exc.to_dict()))


async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return _send(
        fail(HTTPStatus.BAD_REQUEST, "invalid_request", "Request is invalid", details=details)
    )


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    status = HTTPStatus(exc.status_code)
    if status == HTTPStatus.NOT_FOUND:
        return _send(fail(status, "not_found", "Route not found"))
    return _send(fail(status, "http_error", str(exc.detail)))


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("api.unhandled_error")
    return _send(fail(HTTPStatus.INTERNAL_SERVER_ERROR, "internal_error", "Internal server error"))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    settings: Settings,
    *,
    sink: NotificationSink | None = None,
    gateway: PaymentGateway | None = None,
) -> FastAPI:
    """Build the API; the database is opened on startup and closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = Database(str(settings.abs_db_path))
        await db.connect()
        services = build_services(db, settings, sink=sink, gateway=gateway)
        app.state.controller = OrderController(services, settings)
        app.state.started = time.monotonic()
        log.info("api.started", db_path=str(settings.abs_db_path))
        try:
            yield
        finally:
            await db.close()
            log.info("api.stopped")

    app = FastAPI(title="Orderflow API", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def bind_request_context(
        request: Request, call_next: Callable[[Request], Awaitable[StarletteResponse]]
    ) -> StarletteResponse:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        with request_context(request_id, request.method, request.url.path):
            started = time.perf_counter()
            response = await call_next(request)
            log.info(
                "api.request",
                status=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
        response.headers["X-Request-Id"] = request_id
        return response

    app.add_exception_handler(OrderflowError, _workflow_error)
    app.add_exception_handler(RequestValidationError, _invalid_request)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unhandled_error)

    for router in (health, orders, packages, webhooks):
        app.include_router(router)
    return app
