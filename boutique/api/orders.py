"""
Order, notification and stock routes.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from boutique.api.auth import CurrentUser, get_current_user, require_admin
from boutique.audit import AuditLogEntry
from boutique.container import Services
from boutique.errors import AuthorizationError, NotificationNotFoundError
from boutique.notifications import Notification
from boutique.orders.inventory import Product
from boutique.orders.models import Order, ShippingAddress
from boutique.orders.service import OrderLineRequest

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


async def load_owned_order(services: Services, order_id: str, user: CurrentUser) -> Order:
    order = await services.lifecycle.get_order(order_id)
    if order.user_id != user.user_id and not user.is_admin:
        raise AuthorizationError("Not authorized to access this order")
    return order


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateOrderRequest(BaseModel):
    """Storefront order payload; camelCase names are accepted too"""
    model_config = ConfigDict(populate_by_name=True)

    order_items: list[OrderLineRequest] = Field(..., alias="orderItems")
    shipping_address: ShippingAddress = Field(..., alias="shippingAddress")
    payment_method: str = Field(..., alias="paymentMethod")


class RestockRequest(BaseModel):
    qty: int = Field(..., ge=1)


class RestockResponse(BaseModel):
    product: Product
    orders_committed: list[str]


# =============================================================================
# ORDERS
# =============================================================================

@router.post("/api/orders", response_model=Order, status_code=201)
async def create_order(
    body: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.lifecycle.create_order(
        user.user_id, body.order_items, body.shipping_address, body.payment_method
    )


@router.get("/api/orders/mine", response_model=list[Order])
async def my_orders(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.lifecycle.list_orders_for_user(user.user_id)


@router.get("/api/orders", response_model=list[Order])
async def all_orders(
    _: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return await services.lifecycle.list_orders()


@router.get("/api/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await load_owned_order(services, order_id, user)


@router.put("/api/orders/{order_id}/pay", response_model=Order)
async def refresh_payment(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Polling: ask the provider whether the order has been paid."""
    await load_owned_order(services, order_id, user)
    return await services.lifecycle.refresh_payment(order_id, services.gateways)


@router.put("/api/orders/{order_id}/deliver", response_model=Order)
async def deliver_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    outcome = await services.lifecycle.mark_delivered(order_id, actor=f"admin:{admin.user_id}")
    return outcome.order


@router.delete("/api/orders/{order_id}")
async def delete_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    await services.lifecycle.delete_order(order_id, actor=f"admin:{admin.user_id}")
    return {"message": "Order removed"}


@router.get("/api/orders/{order_id}/audit", response_model=list[AuditLogEntry])
async def order_audit_trail(
    order_id: str,
    _: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return await services.lifecycle.get_audit_trail(order_id)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@router.get("/api/notifications", response_model=list[Notification])
async def list_notifications(
    unread_only: bool = False,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return await services.notifications.list_for_user(user.user_id, unread_only=unread_only)


@router.put("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    if not await services.notifications.mark_read(user.user_id, notification_id):
        raise NotificationNotFoundError(notification_id)
    return {"message": "Notification marked as read"}


# =============================================================================
# STOCK
# =============================================================================

@router.put("/api/products/{product_id}/stock", response_model=RestockResponse)
async def restock_product(
    product_id: str,
    body: RestockRequest,
    _: CurrentUser = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Add stock, then retry paid orders that were short of this product."""
    product = await services.inventory.restock(product_id, body.qty)
    committed = await services.lifecycle.retry_stock_for_product(product_id)
    return RestockResponse(product=product, orders_committed=committed)
