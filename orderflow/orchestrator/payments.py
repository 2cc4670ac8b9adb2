"""Checkout and payment confirmation for service orders.

``PaymentService`` keeps the accounting fields on the order.  Talking to
the payment provider is the job of a ``PaymentGateway``; the production
one is ``StripeCheckoutGateway``, which opens hosted Checkout sessions and
verifies the signed ``checkout.session.completed`` webhook that confirms
them.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol

import stripe
from pydantic import BaseModel

from config.settings import Settings
from orderflow.errors import (
    InvalidTransitionError,
    NotAvailableError,
    NotFoundError,
    NotFoundOrUnauthorizedError,
    PaymentsUnavailableError,
    PaymentVerificationError,
)
from orderflow.models.schemas import ActivityAction, ServiceOrder, to_cents
from orderflow.orchestrator.engine import Effects, OrderWorkflowEngine
from orderflow.utils.logger import get_logger

log = get_logger(__name__, component="payments")

CHECKOUT_COMPLETED = "checkout.session.completed"


class CheckoutSession(BaseModel):
    session_id: str
    url: str


class PaymentConfirmation(BaseModel):
    """A verified notice from the provider that a session was paid."""

    order_id: str
    session_id: str


class PaymentGateway(Protocol):
    async def create_session(self, order: ServiceOrder) -> CheckoutSession:
        ...

    def parse_webhook(self, payload: bytes, signature: str | None) -> PaymentConfirmation | None:
        ...


class StripeCheckoutGateway:
    """Hosted Stripe Checkout for one-off order payments.

    Parameters
    ----------
    secret_key:
        Stripe API key used for every call; the global ``stripe.api_key``
        is left alone.
    webhook_secret:
        Signing secret the webhook endpoint verifies events with.
    success_url, cancel_url:
        Return URLs; ``{order_id}`` is substituted.
    currency:
        ISO code the price is charged in.
    """

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        success_url: str,
        cancel_url: str,
        currency: str = "usd",
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._success_url = success_url
        self._cancel_url = cancel_url
        self._currency = currency

    async def create_session(self, order: ServiceOrder) -> CheckoutSession:
        params = {
            "api_key": self._secret_key,
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self._currency,
                        "unit_amount": to_cents(order.price),
                        "product_data": {"name": f"{order.package_name} ({order.order_number})"},
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": order.id,
            "metadata": {"order_id": order.id, "order_number": order.order_number},
            "success_url": self._success_url.format(order_id=order.id),
            "cancel_url": self._cancel_url.format(order_id=order.id),
        }
        try:
            # The stripe client is synchronous.
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as exc:
            log.error("payments.stripe_error", order_id=order.id, error=str(exc))
            raise PaymentsUnavailableError("The payment provider could not start checkout") from exc
        return CheckoutSession(session_id=session.id, url=session.url)

    def parse_webhook(self, payload: bytes, signature: str | None) -> PaymentConfirmation | None:
        """Verify a webhook delivery; ``None`` for events that do not confirm a payment."""
        if not signature:
            raise PaymentVerificationError("Missing payment signature")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError:
            raise PaymentVerificationError("Invalid payment payload") from None
        except stripe.SignatureVerificationError:
            raise PaymentVerificationError("Invalid payment signature") from None

        if event["type"] != CHECKOUT_COMPLETED:
            log.debug("payments.event_ignored", event_type=event["type"])
            return None
        session = event["data"]["object"]
        if session.get("payment_status", "paid") != "paid":
            return None
        metadata = session.get("metadata") or {}
        order_id = metadata.get("order_id") or session.get("client_reference_id")
        if not order_id:
            log.warning("payments.session_without_order", session_id=session["id"])
            return None
        return PaymentConfirmation(order_id=order_id, session_id=session["id"])


def gateway_from_settings(settings: Settings) -> StripeCheckoutGateway | None:
    """The Stripe gateway, or ``None`` when no secret key is configured."""
    if not settings.stripe_secret_key:
        return None
    return StripeCheckoutGateway(
        settings.stripe_secret_key,
        settings.stripe_webhook_secret,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
        currency=settings.payment_currency,
    )


class PaymentService:
    def __init__(self, engine: OrderWorkflowEngine, gateway: PaymentGateway | None = None) -> None:
        self._engine = engine
        self._gateway = gateway

    @property
    def enabled(self) -> bool:
        return self._gateway is not None

    def _require_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            raise PaymentsUnavailableError("No payment gateway is configured")
        return self._gateway

    async def begin_checkout(self, order_id: str, buyer_id: str) -> CheckoutSession:
        """Open a checkout session for the order price and remember its id."""
        gateway = self._require_gateway()
        order = await self._engine.get_order(order_id, buyer_id)
        self._check_payable(order, buyer_id)

        session = await gateway.create_session(order)

        def apply(current: ServiceOrder, effects: Effects) -> None:
            self._check_payable(current, buyer_id)
            current.payment_session_id = session.session_id
            current.log(
                ActivityAction.CHECKOUT_STARTED,
                buyer_id,
                f"Checkout started for ${current.price:.2f}",
            )

        await self._engine.mutate(
            order.id, apply, party=lambda o: o.buyer_id == buyer_id, actor_id=buyer_id
        )
        log.info("payments.checkout_started", order_id=order.id, session_id=session.session_id)
        return session

    async def record_payment(self, order_id: str, session_id: str) -> ServiceOrder:
        """Mark the order paid once the provider confirms *session_id*."""

        def apply(order: ServiceOrder, effects: Effects) -> None:
            if order.payment_session_id != session_id:
                raise NotFoundError("No checkout session matches this order")
            if order.is_paid:
                raise InvalidTransitionError("Order has already been paid")
            order.is_paid = True
            order.paid_at = datetime.now(timezone.utc)
            order.log(
                ActivityAction.PAYMENT_RECEIVED,
                order.buyer_id,
                f"Payment of ${order.price:.2f} received",
            )

        order = await self._engine.mutate(order_id, apply)
        log.info("payments.recorded", order_id=order.id, amount=order.price)
        return order

    async def handle_webhook(self, payload: bytes, signature: str | None) -> ServiceOrder | None:
        """Apply a provider webhook; redelivery of a recorded payment is a no-op."""
        confirmation = self._require_gateway().parse_webhook(payload, signature)
        if confirmation is None:
            return None
        order = await self._engine.load(confirmation.order_id)
        if order.is_paid and order.payment_session_id == confirmation.session_id:
            log.info("payments.duplicate_confirmation", order_id=order.id)
            return order
        return await self.record_payment(order.id, confirmation.session_id)

    @staticmethod
    def _check_payable(order: ServiceOrder, buyer_id: str) -> None:
        if order.buyer_id != buyer_id:
            raise NotFoundOrUnauthorizedError("Order not found or unauthorized")
        if order.is_paid:
            raise InvalidTransitionError("Order has already been paid")
        if order.is_terminal:
            raise InvalidTransitionError(
                f"Cannot pay for an order that is {order.status.value}"
            )
        if order.price <= 0:
            raise NotAvailableError("Order has not been priced yet")
