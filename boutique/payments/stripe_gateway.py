"""
Stripe Checkout adapter.

- create_checkout: one Checkout Session per order version, tagged with the
  order id so every webhook can find its way back
- process_webhook: signature check, then idempotent routing through
  WebhookProcessor into OrderLifecycle
- fetch_payment: session lookup for the user polling path
"""

import asyncio
import json
import os
import uuid
from typing import Any, Optional

import stripe
import structlog

from boutique.errors import OrderNotFoundError, PaymentProviderError, WebhookVerificationError
from boutique.orders.models import (
    Order,
    PaymentCheck,
    PaymentProvider,
    PaymentResult,
    PaymentState,
)
from boutique.orders.service import CheckoutResult, IPaymentGateway, OrderLifecycle
from boutique.orders.state_machine import LifecycleEvent, plan_transition
from boutique.payments.webhooks import WebhookOutcome, WebhookProcessor, WebhookRouter


# =============================================================================
# CONFIGURATION
# =============================================================================

class StripeSettings:
    SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

    # Stripe's default replay window for webhook timestamps
    WEBHOOK_TOLERANCE_SECONDS = 300


settings = StripeSettings()

PAID_STATUSES = ("paid", "no_payment_required")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Field access that works on webhook dicts and on SDK objects"""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _order_id_from_session(session: Any) -> Optional[str]:
    return _get(session, "client_reference_id") or _get(_get(session, "metadata"), "order_id")


def _result_from_session(session: Any, error_message: Optional[str] = None) -> PaymentResult:
    return PaymentResult(
        provider=PaymentProvider.STRIPE,
        reference=_get(session, "id"),
        capture_id=_get(session, "payment_intent"),
        status=_get(session, "payment_status") or _get(session, "status") or "unknown",
        email_address=_get(_get(session, "customer_details"), "email") or _get(session, "customer_email"),
        amount_cents=_get(session, "amount_total"),
        error_message=error_message,
    )


class StripeGateway(IPaymentGateway):
    """
    Stripe Checkout for boutique orders.

    Example:
        gateway = StripeGateway(lifecycle, processor)
        checkout = await gateway.create_checkout(order, customer_email=user.email)
        # User pays at checkout.url
        # Webhook: await gateway.process_webhook(payload, signature)
    """

    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        processor: WebhookProcessor,
        stripe_client: Any = stripe,
        webhook_secret: Optional[str] = None,
    ):
        self.lifecycle = lifecycle
        self.processor = processor
        self.stripe = stripe_client
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.WEBHOOK_SECRET

        if stripe_client is stripe and settings.SECRET_KEY:
            stripe.api_key = settings.SECRET_KEY

        self.router = WebhookRouter(PaymentProvider.STRIPE.value)
        self._register_handlers()
        self.processor.add_router(self.router)

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="stripe_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    def _line_items(self, order: Order) -> list[dict]:
        line_items = []
        for item in order.items:
            product_data: dict = {"name": item.name}
            if item.image and item.image.startswith("http"):
                product_data["images"] = [item.image]
            line_items.append({
                "price_data": {
                    "currency": order.currency,
                    "product_data": product_data,
                    "unit_amount": item.unit_price_cents,
                },
                "quantity": item.qty,
            })

        for name, amount in (("Tax", order.tax_price_cents), ("Shipping", order.shipping_price_cents)):
            if amount > 0:
                line_items.append({
                    "price_data": {
                        "currency": order.currency,
                        "product_data": {"name": name},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                })
        return line_items

    async def create_checkout(self, order: Order, customer_email: Optional[str] = None) -> CheckoutResult:
        log = self._get_logger(order.correlation_id)

        # Refuse before talking to Stripe if the order can't take a checkout
        plan_transition(order.status, LifecycleEvent.CHECKOUT_STARTED)

        log.info("checkout_initiated", order_id=order.order_id, amount=order.total_price_cents)

        metadata = {
            "order_id": order.order_id,
            "user_id": order.user_id,
            "correlation_id": order.correlation_id,
        }
        params = dict(
            mode="payment",
            payment_method_types=["card"],
            line_items=self._line_items(order),
            client_reference_id=order.order_id,
            success_url=f"{settings.CLIENT_URL}/order/{order.order_id}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.CLIENT_URL}/order/{order.order_id}",
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            idempotency_key=f"checkout_{order.order_id}_v{order.version}",
        )
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(self.stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise PaymentProviderError("Stripe checkout session could not be created", {"error": str(e)}) from e

        await self.lifecycle.start_checkout(order.order_id, PaymentProvider.STRIPE, session.id)

        log.info("checkout_created", order_id=order.order_id, stripe_session_id=session.id)
        return CheckoutResult(
            order_id=order.order_id,
            provider=PaymentProvider.STRIPE,
            reference=session.id,
            url=session.url,
        )

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify a Stripe webhook and hand it to the processor."""
        log = self._get_logger()

        if not self.webhook_secret:
            log.error("webhook_secret_missing")
            raise WebhookVerificationError("Stripe webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        # Verify signature BEFORE trusting the payload
        try:
            self.stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, tolerance=settings.WEBHOOK_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            log.warning("webhook_signature_invalid", error=str(e))
            raise WebhookVerificationError("Invalid webhook signature") from e
        except ValueError as e:
            log.warning("webhook_payload_invalid", error=str(e))
            raise WebhookVerificationError("Invalid webhook payload") from e

        event = json.loads(payload)
        event_type = event.get("type", "unknown")
        data_object = event.get("data", {}).get("object", {})
        correlation_id = _get(data_object.get("metadata"), "correlation_id") or str(uuid.uuid4())

        return await self.processor.process(
            provider=PaymentProvider.STRIPE.value,
            provider_event_id=event.get("id", "unknown"),
            event_type=event_type,
            payload=event,
            correlation_id=correlation_id,
        )

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, correlation_id: str):
            return await self._on_checkout_completed(event, correlation_id)

        @self.router.register("checkout.session.async_payment_succeeded")
        async def handle_async_succeeded(event: dict, correlation_id: str):
            return await self._on_checkout_completed(event, correlation_id)

        @self.router.register("checkout.session.async_payment_failed")
        async def handle_async_failed(event: dict, correlation_id: str):
            return await self._on_session_failed(event, correlation_id, "async_payment_failed")

        @self.router.register("checkout.session.expired")
        async def handle_session_expired(event: dict, correlation_id: str):
            return await self._on_session_failed(event, correlation_id, "expired")

        @self.router.register("payment_intent.payment_failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_intent_failed(event, correlation_id)

    async def _apply(self, order_id: str, result: PaymentResult, paid: bool, log) -> dict:
        apply = self.lifecycle.confirm_payment if paid else self.lifecycle.fail_payment
        try:
            outcome = await apply(order_id, result, source="stripe_webhook")
        except OrderNotFoundError:
            log.warning("webhook_order_missing", order_id=order_id)
            return {"status": "ignored", "reason": "order_not_found"}
        return {"status": outcome.order.status.value, "changed": outcome.changed, "order_id": order_id}

    async def _on_checkout_completed(self, event: dict, correlation_id: str):
        log = self._get_logger(correlation_id)
        session = event["data"]["object"]
        order_id = _order_id_from_session(session)

        log.info("checkout_completed_received",
                 stripe_session_id=session.get("id"),
                 order_id=order_id,
                 payment_status=session.get("payment_status"))

        if not order_id:
            log.warning("webhook_order_missing", stripe_session_id=session.get("id"))
            return {"status": "ignored", "reason": "no_order_id"}

        if session.get("payment_status") not in PAID_STATUSES:
            # Delayed payment methods: async_payment_succeeded/failed will follow
            return {"status": "pending", "order_id": order_id}

        return await self._apply(order_id, _result_from_session(session), paid=True, log=log)

    async def _on_session_failed(self, event: dict, correlation_id: str, reason: str):
        log = self._get_logger(correlation_id)
        session = event["data"]["object"]
        order_id = _order_id_from_session(session)

        log.info("checkout_session_failed", stripe_session_id=session.get("id"), order_id=order_id, reason=reason)

        if not order_id:
            return {"status": "ignored", "reason": "no_order_id"}

        return await self._apply(
            order_id, _result_from_session(session, error_message=reason), paid=False, log=log
        )

    async def _on_payment_intent_failed(self, event: dict, correlation_id: str):
        log = self._get_logger(correlation_id)
        payment_intent = event["data"]["object"]
        order_id = _get(payment_intent.get("metadata"), "order_id")
        error = payment_intent.get("last_payment_error") or {}

        log.warning("payment_intent_failed",
                    order_id=order_id,
                    error_code=error.get("code"),
                    decline_code=error.get("decline_code"))

        if not order_id:
            return {"status": "ignored", "reason": "no_order_id"}

        result = PaymentResult(
            provider=PaymentProvider.STRIPE,
            capture_id=payment_intent.get("id"),
            status=payment_intent.get("status") or "requires_payment_method",
            amount_cents=payment_intent.get("amount"),
            error_message=error.get("message") or error.get("code") or "payment_failed",
        )
        return await self._apply(order_id, result, paid=False, log=log)

    # =========================================================================
    # POLLING
    # =========================================================================

    async def fetch_payment(self, order: Order) -> PaymentCheck:
        log = self._get_logger(order.correlation_id)
        try:
            session = await asyncio.to_thread(
                self.stripe.checkout.Session.retrieve, order.payment_reference
            )
        except stripe.StripeError as e:
            log.error("session_retrieve_failed", order_id=order.order_id, error=str(e))
            raise PaymentProviderError("Stripe session lookup failed", {"error": str(e)}) from e

        if _get(session, "payment_status") in PAID_STATUSES:
            return PaymentCheck(state=PaymentState.COMPLETED, result=_result_from_session(session))
        if _get(session, "status") == "expired":
            return PaymentCheck(
                state=PaymentState.FAILED,
                result=_result_from_session(session, error_message="expired"),
            )
        return PaymentCheck(state=PaymentState.PENDING, result=_result_from_session(session))
