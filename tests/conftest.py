import hashlib
import hmac
import json
import re
import time
from types import SimpleNamespace

import httpx
import pytest
import stripe

from boutique.container import build_services
from boutique.orders.inventory import InMemoryInventory, Product
from boutique.orders.models import ShippingAddress
from boutique.orders.service import OrderLifecycle
from boutique.payments.paypal_gateway import PayPalClient

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYPAL_BASE_URL = "https://api-m.sandbox.paypal.com"
PAYPAL_WEBHOOK_ID = "WH-TEST-1"


# =============================================================================
# CATALOG
# =============================================================================

def make_products() -> list[Product]:
    return [
        Product(product_id="shirt", name="Linen Shirt", price_cents=2500, count_in_stock=5),
        Product(product_id="scarf", name="Silk Scarf", price_cents=1000, count_in_stock=1),
        Product(product_id="coat", name="Wool Coat", price_cents=12000, count_in_stock=2),
    ]


ADDRESS = ShippingAddress(address="1 Main St", city="Springfield", postal_code="12345", country="US")


@pytest.fixture
def products():
    return make_products()


@pytest.fixture
def lifecycle(products):
    return OrderLifecycle(inventory=InMemoryInventory(products))


@pytest.fixture
def address():
    return ADDRESS


# =============================================================================
# FAKE STRIPE
# =============================================================================

class FakeStripe:
    """Stands in for the ``stripe`` module: checkout.Session.create/retrieve and Webhook"""

    def __init__(self):
        self.created: list[dict] = []
        self.sessions: dict[str, SimpleNamespace] = {}
        self.checkout = SimpleNamespace(Session=self)
        self.Webhook = stripe.Webhook
        self.fail_next_create = False

    def create(self, **params):
        if self.fail_next_create:
            self.fail_next_create = False
            raise stripe.APIConnectionError("network down")
        session_id = f"cs_test_{len(self.created) + 1}"
        self.created.append(params)
        session = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            status="open",
            payment_status="unpaid",
            amount_total=None,
            payment_intent=None,
            customer_details=None,
            customer_email=params.get("customer_email"),
            client_reference_id=params.get("client_reference_id"),
            metadata=params.get("metadata"),
        )
        self.sessions[session_id] = session
        return session

    def retrieve(self, session_id):
        return self.sessions[session_id]

    def mark_paid(self, session_id: str, amount_total: int, payment_intent: str = "pi_test_1"):
        session = self.sessions[session_id]
        session.status = "complete"
        session.payment_status = "paid"
        session.amount_total = amount_total
        session.payment_intent = payment_intent
        session.customer_details = {"email": "buyer@example.com"}


@pytest.fixture
def fake_stripe():
    return FakeStripe()


def sign_stripe_payload(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def stripe_event(event_id: str, event_type: str, data_object: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


def checkout_session_object(order, session_id: str, payment_status: str = "paid", amount_total=None) -> dict:
    return {
        "id": session_id,
        "object": "checkout.session",
        "client_reference_id": order.order_id,
        "payment_status": payment_status,
        "status": "complete" if payment_status == "paid" else "open",
        "amount_total": order.total_price_cents if amount_total is None else amount_total,
        "payment_intent": f"pi_for_{session_id}",
        "customer_details": {"email": "buyer@example.com"},
        "metadata": {"order_id": order.order_id, "correlation_id": order.correlation_id},
    }


# =============================================================================
# FAKE PAYPAL (httpx.MockTransport)
# =============================================================================

class FakePayPal:
    """In-memory PayPal REST API served through httpx.MockTransport"""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.capture_calls = 0
        self.decline_captures = False

    def _json(self, request: httpx.Request) -> dict:
        return json.loads(request.content) if request.content else {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})

        if path == "/v1/notifications/verify-webhook-signature":
            body = self._json(request)
            ok = body.get("transmission_sig") == "valid-signature" and body.get("webhook_id") == PAYPAL_WEBHOOK_ID
            return httpx.Response(200, json={"verification_status": "SUCCESS" if ok else "FAILURE"})

        if path == "/v2/checkout/orders" and request.method == "POST":
            body = self._json(request)
            paypal_id = f"PP-{len(self.orders) + 1}"
            unit = body["purchase_units"][0]
            self.orders[paypal_id] = {
                "id": paypal_id,
                "status": "CREATED",
                "purchase_units": [{
                    "reference_id": unit["reference_id"],
                    "custom_id": unit["custom_id"],
                    "amount": {"currency_code": unit["amount"]["currency_code"], "value": unit["amount"]["value"]},
                }],
                "links": [
                    {"rel": "self", "href": f"{PAYPAL_BASE_URL}/v2/checkout/orders/{paypal_id}"},
                    {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={paypal_id}"},
                ],
            }
            return httpx.Response(201, json=self.orders[paypal_id])

        match = re.fullmatch(r"/v2/checkout/orders/([^/]+)(/capture)?", path)
        if match:
            paypal_id, capture = match.groups()
            order = self.orders.get(paypal_id)
            if order is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            if not capture:
                return httpx.Response(200, json=order)

            self.capture_calls += 1
            if order["status"] == "COMPLETED":
                return httpx.Response(422, json={
                    "name": "UNPROCESSABLE_ENTITY",
                    "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
                })
            if order["status"] != "APPROVED":
                return httpx.Response(422, json={
                    "name": "UNPROCESSABLE_ENTITY",
                    "details": [{"issue": "ORDER_NOT_APPROVED"}],
                })
            return httpx.Response(201, json=self._capture(order))

        return httpx.Response(404, json={"name": "NOT_FOUND"})

    def _capture(self, order: dict) -> dict:
        unit = order["purchase_units"][0]
        capture_status = "DECLINED" if self.decline_captures else "COMPLETED"
        capture = {
            "id": f"CAP-{order['id']}",
            "status": capture_status,
            "amount": unit["amount"],
        }
        if self.decline_captures:
            capture["status_details"] = {"reason": "DECLINED_BY_RISK_FRAUD_CONTROLS"}
        order["status"] = "COMPLETED"
        order["payer"] = {"email_address": "payer@example.com"}
        unit["payments"] = {"captures": [capture]}
        return order

    def approve(self, paypal_id: str):
        self.orders[paypal_id]["status"] = "APPROVED"

    def client(self) -> PayPalClient:
        return PayPalClient(
            client_id="client-id",
            client_secret="client-secret",
            base_url=PAYPAL_BASE_URL,
            http_client=httpx.AsyncClient(
                base_url=PAYPAL_BASE_URL,
                transport=httpx.MockTransport(self.handler),
            ),
        )


@pytest.fixture
def fake_paypal():
    return FakePayPal()


PAYPAL_SIGNED_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "valid-signature",
    "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
}


def paypal_event(event_id: str, event_type: str, resource: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "event_type": event_type,
        "resource_type": "checkout-order" if event_type.startswith("CHECKOUT") else "capture",
        "resource": resource,
    }).encode("utf-8")


# =============================================================================
# FULL SERVICE GRAPH
# =============================================================================

@pytest.fixture
def services(products, fake_stripe, fake_paypal):
    return build_services(
        "memory",
        products=products,
        stripe_client=fake_stripe,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        paypal_client=fake_paypal.client(),
        paypal_webhook_id=PAYPAL_WEBHOOK_ID,
    )
