"""
Checkout and webhook routes for Stripe and PayPal, plus the webhook DLQ admin.

Webhook routes read the raw body: Stripe signs the exact bytes it sent.
A delivery that failed in our handlers answers 500 so the provider
redelivers it; the idempotency store makes the redelivery safe.
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from boutique.api.auth import CurrentUser, get_current_user, require_admin
from boutique.api.orders import get_services, load_owned_order
from boutique.container import Services
from boutique.orders.service import CheckoutResult
from boutique.payments.webhooks import WebhookOutcome

router = APIRouter()
logger = structlog.get_logger().bind(component="payments_api")


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")


def _webhook_response(outcome: WebhookOutcome) -> JSONResponse:
    body = {"received": True, "status": outcome.status, "event_type": outcome.event_type}
    if outcome.failed:
        logger.warning("webhook_response_failed", event_id=outcome.event_id, status=outcome.status)
        return JSONResponse(status_code=500, content={**body, "error": outcome.error})
    return JSONResponse(status_code=200, content=body)


# =============================================================================
# STRIPE
# =============================================================================

@router.post("/api/stripe/create-checkout-session", response_model=CheckoutResult)
async def stripe_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await load_owned_order(services, body.order_id, user)
    return await services.stripe.create_checkout(order, customer_email=user.email)


@router.post("/api/stripe/webhook")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    outcome = await services.stripe.process_webhook(payload, request.headers.get("stripe-signature"))
    return _webhook_response(outcome)


# =============================================================================
# PAYPAL
# =============================================================================

@router.post("/api/paypal/create-checkout-session", response_model=CheckoutResult)
async def paypal_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = await load_owned_order(services, body.order_id, user)
    return await services.paypal.create_checkout(order, customer_email=user.email)


@router.post("/api/paypal/webhook")
async def paypal_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    outcome = await services.paypal.process_webhook(payload, dict(request.headers))
    return _webhook_response(outcome)


# =============================================================================
# DEAD LETTER QUEUE
# =============================================================================

@router.get("/api/admin/webhooks/dlq")
async def dlq_stats(
    _: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return await services.processor.get_dlq_stats()


@router.post("/api/admin/webhooks/dlq/retry")
async def dlq_retry(
    _: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    retried = await services.processor.retry_dead_letters(include_exhausted=True)
    return {"retried": retried, "stats": await services.processor.get_dlq_stats()}
