"""
Reconciliation Loop - The Safety Net
====================================
Background task that catches what the webhooks missed.

Each cycle:
- Polls the provider for orders stuck in awaiting_payment
- Retries stock commits for paid or delivered orders that came up short
- Replays webhook deliveries whose retry backoff has elapsed
- Purges webhook records past their TTL

Runs in the API process next to the webhooks it backs up. Every step goes
through OrderLifecycle, so a late webhook and a reconciliation pass for the
same order can't both take stock.
"""

import asyncio
import os
from datetime import timedelta

import structlog

from boutique.container import Services
from boutique.orders.models import OrderStatus, utcnow

logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation loop configuration"""

    # How often to run a cycle (seconds)
    CHECK_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "300"))  # 5 minutes

    # How long an order may await payment before we ask the provider (minutes)
    STALE_THRESHOLD = int(os.getenv("RECONCILE_THRESHOLD", "10"))

    # Maximum orders per step per cycle
    BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "25"))

    ENABLED = os.getenv("RECONCILE_ENABLED", "true").lower() == "true"


config = ReconciliationConfig()


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

async def refresh_stale_payments(services: Services) -> dict:
    cutoff = utcnow() - timedelta(minutes=config.STALE_THRESHOLD)
    stale = await services.lifecycle.orders.list_stale(
        OrderStatus.AWAITING_PAYMENT, older_than=cutoff, limit=config.BATCH_SIZE
    )
    stats = {"checked": 0, "paid": 0, "failed": 0, "errors": 0}

    for order in stale:
        stats["checked"] += 1
        # Still-pending orders go to the back of the queue
        await services.lifecycle.orders.mark_reconciled(order.order_id, utcnow())
        try:
            refreshed = await services.lifecycle.refresh_payment(order.order_id, services.gateways)
        except Exception as e:
            stats["errors"] += 1
            logger.error("reconcile_refresh_failed", order_id=order.order_id, error=str(e))
            continue

        if refreshed.is_paid:
            stats["paid"] += 1
            logger.warning("reconcile_recovered_payment",
                           order_id=order.order_id,
                           provider=(refreshed.payment_provider or refreshed.payment_method).value)
        elif refreshed.status == OrderStatus.PAYMENT_FAILED:
            stats["failed"] += 1

    return stats


async def retry_uncommitted_stock(services: Services) -> dict:
    pending = await services.lifecycle.orders.list_uncommitted_paid(limit=config.BATCH_SIZE)
    stats = {"checked": 0, "committed": 0, "errors": 0}

    for order in pending:
        stats["checked"] += 1
        try:
            outcome = await services.lifecycle.retry_stock_commit(order.order_id)
        except Exception as e:
            stats["errors"] += 1
            logger.error("reconcile_stock_failed", order_id=order.order_id, error=str(e))
            continue
        if outcome.order.stock_committed:
            stats["committed"] += 1

    return stats


async def reconcile_once(services: Services) -> dict:
    """Run one reconciliation cycle. Returns per-step stats."""
    payments = await refresh_stale_payments(services)
    stock = await retry_uncommitted_stock(services)

    try:
        webhooks_replayed = await services.processor.retry_dead_letters()
    except Exception as e:
        logger.error("reconcile_webhook_retry_failed", error=str(e))
        webhooks_replayed = 0

    try:
        webhooks_purged = await services.processor.purge_expired()
    except Exception as e:
        logger.error("reconcile_webhook_purge_failed", error=str(e))
        webhooks_purged = {}

    result = {
        "payments": payments,
        "stock": stock,
        "webhooks_replayed": webhooks_replayed,
        "webhooks_purged": webhooks_purged,
    }
    logger.info("reconcile_cycle_complete", **result)
    return result


async def reconciliation_loop(services: Services):
    """
    Main reconciliation loop.

    Runs forever until cancelled.
    """
    if not config.ENABLED:
        logger.info("reconciliation_disabled")
        return

    logger.info("reconciliation_loop_started",
                interval=config.CHECK_INTERVAL,
                threshold_minutes=config.STALE_THRESHOLD)

    while True:
        try:
            await reconcile_once(services)
        except asyncio.CancelledError:
            logger.info("reconciliation_loop_stopped")
            raise
        except Exception as e:
            logger.error("reconciliation_cycle_error", error=str(e), exc_info=True)

        await asyncio.sleep(config.CHECK_INTERVAL)
