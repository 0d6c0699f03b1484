"""
Audit trail for the order lifecycle.

Every state change is appended with the order's correlation_id so the whole
story of an order (creation, checkout, webhooks, stock, delivery) can be
read back in one query.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from boutique import database
from boutique.orders.models import utcnow


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_DELIVERED = "order.delivered"
    ORDER_DELETED = "order.deleted"
    CHECKOUT_STARTED = "checkout.started"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_DUPLICATE = "payment.duplicate"
    PAYMENT_AMOUNT_MISMATCH = "payment.amount_mismatch"
    STOCK_COMMITTED = "stock.committed"
    STOCK_SHORTFALL = "stock.shortfall"
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_PROCESSED = "webhook.processed"
    WEBHOOK_FAILED = "webhook.failed"
    WEBHOOK_DLQ = "webhook.dead_letter_queue"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "webhook", "stock"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "webhook", "user", "admin", "reconciler"
    severity: str = "INFO"


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))


class BlackBoxAuditLog(IAuditLog):
    """Audit log persisted to the system_events table"""

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="audit_log")

    async def append(self, entry: AuditLogEntry) -> None:
        await database.log_event(
            event_type=entry.event_type.value,
            payload={
                "log_id": entry.log_id,
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            correlation_id=entry.correlation_id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            actor=entry.actor,
            severity=entry.severity,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await database.get_events_by_correlation(correlation_id)
        entries = []
        for row in rows:
            payload = row["payload"] or {}
            entries.append(AuditLogEntry(
                log_id=payload.get("log_id") or str(row["id"]),
                correlation_id=row["correlation_id"],
                event_type=AuditEventType(row["event_type"]),
                entity_type=row["entity_type"] or "order",
                entity_id=row["entity_id"] or "",
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=row["timestamp"],
                actor=row["actor"] or "system",
                severity=row["severity"] or "INFO",
            ))
        return entries
