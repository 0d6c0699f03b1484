"""
PayPal Orders v2 adapter.

PayPal has no SDK in the stack: ``PayPalClient`` talks to the REST API with
httpx. Capture happens server side, either when the CHECKOUT.ORDER.APPROVED
webhook arrives or when the user polls, whichever comes first. Both paths
send a PayPal-Request-Id so PayPal itself deduplicates the capture.
"""

import asyncio
import json
import os
import time
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

import httpx
import structlog

from boutique.errors import PaymentProviderError, WebhookVerificationError
from boutique.orders.models import (
    Order,
    PaymentCheck,
    PaymentProvider,
    PaymentResult,
    PaymentState,
    cents_to_decimal_string,
)
from boutique.orders.service import CheckoutResult, IPaymentGateway, OrderLifecycle
from boutique.orders.state_machine import LifecycleEvent, plan_transition
from boutique.payments.webhooks import WebhookOutcome, WebhookProcessor, WebhookRouter


# =============================================================================
# CONFIGURATION
# =============================================================================

class PayPalSettings:
    CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
    CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
    WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID", "")
    ENV = os.getenv("PAYPAL_ENV", "sandbox")
    TIMEOUT_SECONDS = float(os.getenv("PAYPAL_TIMEOUT_SECONDS", "15"))
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:3000")

    # Refresh the OAuth token this long before PayPal says it expires
    TOKEN_REFRESH_MARGIN_SECONDS = 60

    @property
    def BASE_URL(self) -> str:
        if self.ENV == "production":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


settings = PayPalSettings()


def _to_cents(amount: Optional[dict]) -> Optional[int]:
    """PayPal money object {"currency_code": "USD", "value": "12.50"} -> 1250"""
    if not amount or amount.get("value") is None:
        return None
    try:
        return int((Decimal(str(amount["value"])) * 100).to_integral_value())
    except InvalidOperation:
        return None


# =============================================================================
# REST CLIENT
# =============================================================================

class PayPalClient:
    """Thin async client for the PayPal REST endpoints the boutique uses"""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.CLIENT_SECRET
        self.base_url = base_url or settings.BASE_URL
        self.timeout_seconds = timeout_seconds or settings.TIMEOUT_SECONDS

        self._client = http_client
        self._owns_client = http_client is None
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="paypal_client")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = await self._http().post(
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                self._logger.error("paypal_token_failed", error=str(e))
                raise PaymentProviderError("PayPal authentication failed", {"error": str(e)}) from e

            if response.status_code != 200:
                self._logger.error("paypal_token_rejected", status=response.status_code)
                raise PaymentProviderError(
                    "PayPal authentication failed", {"status": response.status_code}
                )

            data = response.json()
            self._access_token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
            self._token_expires_at = (
                time.monotonic() + expires_in - settings.TOKEN_REFRESH_MARGIN_SECONDS
            )
            return self._access_token

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> httpx.Response:
        token = await self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        try:
            return await self._http().request(method, path, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            self._logger.error("paypal_request_failed", method=method, path=path, error=str(e))
            raise PaymentProviderError("PayPal request failed", {"path": path, "error": str(e)}) from e

    def _raise_for_error(self, response: httpx.Response, action: str):
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:500]}
        self._logger.error("paypal_api_error",
                           action=action,
                           status=response.status_code,
                           name=body.get("name"),
                           debug_id=body.get("debug_id"))
        raise PaymentProviderError(
            f"PayPal {action} failed",
            {"status": response.status_code, "name": body.get("name"), "details": body.get("details")},
        )

    async def create_order(self, order: Order, return_url: str, cancel_url: str) -> dict:
        currency = order.currency.upper()

        def money(cents: int) -> dict:
            return {"currency_code": currency, "value": cents_to_decimal_string(cents)}

        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order.order_id,
                "custom_id": order.order_id,
                "amount": {
                    **money(order.total_price_cents),
                    "breakdown": {
                        "item_total": money(order.items_price_cents),
                        "tax_total": money(order.tax_price_cents),
                        "shipping": money(order.shipping_price_cents),
                    },
                },
                "items": [
                    {
                        "name": item.name[:127],
                        "unit_amount": money(item.unit_price_cents),
                        "quantity": str(item.qty),
                    }
                    for item in order.items
                ],
            }],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            json_body=body,
            request_id=f"create_{order.order_id}_v{order.version}",
        )
        self._raise_for_error(response, "create_order")
        return response.json()

    async def get_order(self, paypal_order_id: str) -> dict:
        response = await self._request("GET", f"/v2/checkout/orders/{paypal_order_id}")
        self._raise_for_error(response, "get_order")
        return response.json()

    async def capture_order(self, paypal_order_id: str) -> dict:
        response = await self._request(
            "POST",
            f"/v2/checkout/orders/{paypal_order_id}/capture",
            request_id=f"capture_{paypal_order_id}",
        )
        if response.status_code == 422:
            issues = [d.get("issue") for d in (response.json().get("details") or [])]
            if "ORDER_ALREADY_CAPTURED" in issues:
                self._logger.info("paypal_order_already_captured", paypal_order_id=paypal_order_id)
                return await self.get_order(paypal_order_id)
        self._raise_for_error(response, "capture_order")
        return response.json()

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: dict, webhook_id: str) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        body = {
            "auth_algo": lowered.get("paypal-auth-algo"),
            "cert_url": lowered.get("paypal-cert-url"),
            "transmission_id": lowered.get("paypal-transmission-id"),
            "transmission_sig": lowered.get("paypal-transmission-sig"),
            "transmission_time": lowered.get("paypal-transmission-time"),
            "webhook_id": webhook_id,
            "webhook_event": event,
        }
        if not all(body[k] for k in ("auth_algo", "cert_url", "transmission_id", "transmission_sig")):
            return False

        response = await self._request("POST", "/v1/notifications/verify-webhook-signature", json_body=body)
        self._raise_for_error(response, "verify_webhook_signature")
        return response.json().get("verification_status") == "SUCCESS"


# =============================================================================
# RESPONSE MAPPING
# =============================================================================

def check_from_paypal_order(data: dict) -> PaymentCheck:
    """Map a PayPal order (GET or capture response) to a PaymentCheck"""
    status = data.get("status")
    unit = (data.get("purchase_units") or [{}])[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else {}
    capture_status = capture.get("status")

    failed = capture_status in ("DECLINED", "FAILED") or status == "VOIDED"
    result = PaymentResult(
        provider=PaymentProvider.PAYPAL,
        reference=data.get("id"),
        capture_id=capture.get("id"),
        status=capture_status or status or "unknown",
        email_address=(data.get("payer") or {}).get("email_address"),
        amount_cents=_to_cents(capture.get("amount") or unit.get("amount")),
        error_message=(
            (capture.get("status_details") or {}).get("reason") or capture_status or status
        ) if failed else None,
    )

    if failed:
        return PaymentCheck(state=PaymentState.FAILED, result=result)
    if status == "COMPLETED" and capture_status in (None, "COMPLETED"):
        return PaymentCheck(state=PaymentState.COMPLETED, result=result)
    return PaymentCheck(state=PaymentState.PENDING, result=result)


def _related_paypal_order_id(resource: dict) -> Optional[str]:
    return ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")


# =============================================================================
# GATEWAY
# =============================================================================

class PayPalGateway(IPaymentGateway):
    """
    PayPal checkout for boutique orders.

    Example:
        gateway = PayPalGateway(lifecycle, processor)
        checkout = await gateway.create_checkout(order)
        # User approves at checkout.url
        # Webhook: await gateway.process_webhook(body, request.headers)
    """

    provider = PaymentProvider.PAYPAL

    def __init__(
        self,
        lifecycle: OrderLifecycle,
        processor: WebhookProcessor,
        client: Optional[PayPalClient] = None,
        webhook_id: Optional[str] = None,
        verify_webhooks: Optional[bool] = None,
    ):
        self.lifecycle = lifecycle
        self.processor = processor
        self.client = client or PayPalClient()
        self.webhook_id = webhook_id if webhook_id is not None else settings.WEBHOOK_ID
        # Without a webhook id there is nothing to verify against; only sandbox may skip
        self.verify_webhooks = (
            verify_webhooks if verify_webhooks is not None
            else bool(self.webhook_id) or settings.ENV == "production"
        )

        self.router = WebhookRouter(PaymentProvider.PAYPAL.value)
        self._register_handlers()
        self.processor.add_router(self.router)

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="paypal_gateway",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def close(self):
        await self.client.close()

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_checkout(self, order: Order, customer_email: Optional[str] = None) -> CheckoutResult:
        log = self._get_logger(order.correlation_id)
        plan_transition(order.status, LifecycleEvent.CHECKOUT_STARTED)

        log.info("checkout_initiated", order_id=order.order_id, amount=order.total_price_cents)

        paypal_order = await self.client.create_order(
            order,
            return_url=f"{settings.CLIENT_URL}/order/{order.order_id}?success=true",
            cancel_url=f"{settings.CLIENT_URL}/order/{order.order_id}?canceled=true",
        )
        links = paypal_order.get("links") or []
        approval_url = next(
            (link["href"] for link in links if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approval_url:
            log.error("paypal_approval_link_missing", paypal_order_id=paypal_order.get("id"))
            raise PaymentProviderError("PayPal approval URL not found")

        await self.lifecycle.start_checkout(order.order_id, PaymentProvider.PAYPAL, paypal_order["id"])

        log.info("checkout_created", order_id=order.order_id, paypal_order_id=paypal_order["id"])
        return CheckoutResult(
            order_id=order.order_id,
            provider=PaymentProvider.PAYPAL,
            reference=paypal_order["id"],
            url=approval_url,
        )

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        log = self._get_logger()

        try:
            event = json.loads(body)
        except ValueError as e:
            log.warning("webhook_payload_invalid", error=str(e))
            raise WebhookVerificationError("Invalid webhook payload") from e

        if self.verify_webhooks:
            if not self.webhook_id:
                log.error("webhook_id_missing")
                raise WebhookVerificationError("PayPal webhook id is not configured")
            if not await self.client.verify_webhook_signature(headers, event, self.webhook_id):
                log.warning("webhook_signature_invalid", event_id=event.get("id"))
                raise WebhookVerificationError("Invalid webhook signature")
        else:
            log.warning("webhook_verification_skipped", event_id=event.get("id"))

        resource = event.get("resource") or {}
        order = await self._resolve_order(resource)

        return await self.processor.process(
            provider=PaymentProvider.PAYPAL.value,
            provider_event_id=event.get("id", "unknown"),
            event_type=event.get("event_type", "unknown"),
            payload=event,
            correlation_id=order.correlation_id if order else None,
        )

    async def _resolve_order(self, resource: dict) -> Optional[Order]:
        """Find our order from an order or capture resource"""
        units = resource.get("purchase_units") or []
        candidates = []
        if units:
            candidates += [units[0].get("reference_id"), units[0].get("custom_id")]
        candidates.append(resource.get("custom_id"))

        for order_id in candidates:
            if order_id and order_id != "default":
                order = await self.lifecycle.orders.get(order_id)
                if order:
                    return order

        related = _related_paypal_order_id(resource)
        if related:
            return await self.lifecycle.orders.get_by_payment_reference(related)
        return None

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("CHECKOUT.ORDER.APPROVED")
        async def handle_order_approved(event: dict, correlation_id: str):
            return await self._on_order_approved(event, correlation_id)

        @self.router.register("PAYMENT.CAPTURE.COMPLETED")
        async def handle_capture_completed(event: dict, correlation_id: str):
            return await self._on_capture_completed(event, correlation_id)

        @self.router.register("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED")
        async def handle_capture_denied(event: dict, correlation_id: str):
            return await self._on_capture_denied(event, correlation_id)

    async def _apply(self, order_id: str, check: PaymentCheck, source: str) -> dict:
        if check.state == PaymentState.COMPLETED:
            outcome = await self.lifecycle.confirm_payment(order_id, check.result, source=source)
        elif check.state == PaymentState.FAILED:
            outcome = await self.lifecycle.fail_payment(order_id, check.result, source=source)
        else:
            return {"status": "pending", "order_id": order_id}
        return {"status": outcome.order.status.value, "changed": outcome.changed, "order_id": order_id}

    async def _on_order_approved(self, event: dict, correlation_id: str):
        log = self._get_logger(correlation_id)
        resource = event["resource"]
        paypal_order_id = resource.get("id")
        order = await self._resolve_order(resource)

        log.info("order_approved_received", paypal_order_id=paypal_order_id,
                 order_id=order.order_id if order else None)
        if order is None:
            log.warning("webhook_order_missing", paypal_order_id=paypal_order_id)
            return {"status": "ignored", "reason": "order_not_found"}
        if order.is_paid:
            return {"status": order.status.value, "changed": False, "order_id": order.order_id}

        captured = await self.client.capture_order(paypal_order_id)
        check = check_from_paypal_order(captured)
        if check.result and not check.result.email_address:
            payer_email = (resource.get("payer") or {}).get("email_address")
            check.result.email_address = payer_email
        return await self._apply(order.order_id, check, source="paypal_webhook")

    async def _on_capture_completed(self, event: dict, correlation_id: str):
        log = self._get_logger(correlation_id)
        capture = event["resource"]
        order = await self._resolve_order(capture)

        log.info("capture_completed_received", capture_id=capture.get("id"),
                 order_id=order.order_id if order else None)
        if order is None:
            log.warning("webhook_order_missing", capture_id=capture.get("id"))
            return {"status": "ignored", "reason": "order_not_found"}

        result = PaymentResult(
            provider=PaymentProvider.PAYPAL,
            reference=_related_paypal_order_id(capture) or order.payment_reference,
            capture_id=capture.get("id"),
            status=capture.get("status") or "COMPLETED",
            amount_cents=_to_cents(capture.get("amount")),
        )
        return await self._apply(
            order.order_id, PaymentCheck(state=PaymentState.COMPLETED, result=result), source="paypal_webhook"
        )

    async def _on_capture_denied(self, event: dict, correlation_id: str):
        log = self._get_logger(correlation_id)
        capture = event["resource"]
        order = await self._resolve_order(capture)
        reason = (capture.get("status_details") or {}).get("reason") or "Payment failed"

        log.warning("capture_denied_received", capture_id=capture.get("id"),
                    order_id=order.order_id if order else None, reason=reason)
        if order is None:
            return {"status": "ignored", "reason": "order_not_found"}

        result = PaymentResult(
            provider=PaymentProvider.PAYPAL,
            reference=_related_paypal_order_id(capture) or order.payment_reference,
            capture_id=capture.get("id"),
            status=capture.get("status") or "DECLINED",
            amount_cents=_to_cents(capture.get("amount")),
            error_message=reason,
        )
        return await self._apply(
            order.order_id, PaymentCheck(state=PaymentState.FAILED, result=result), source="paypal_webhook"
        )

    # =========================================================================
    # POLLING
    # =========================================================================

    async def fetch_payment(self, order: Order) -> PaymentCheck:
        data = await self.client.get_order(order.payment_reference)
        if data.get("status") == "APPROVED":
            self._get_logger(order.correlation_id).info(
                "capturing_on_poll", order_id=order.order_id, paypal_order_id=order.payment_reference
            )
            data = await self.client.capture_order(order.payment_reference)
        return check_from_paypal_order(data)
