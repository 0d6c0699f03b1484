"""
User notifications for order events.

A failing notification store never breaks the order flow: errors are logged
and the caller gets None.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from boutique.database import Database
from boutique.orders.models import cents_to_decimal_string, utcnow


class NotificationType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"
    WARNING = "warning"


class Notification(BaseModel):
    notification_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str
    type: NotificationType = NotificationType.INFO
    title: str = Field(..., max_length=100)
    message: str = Field(..., max_length=500)
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class INotificationStore(ABC):

    @abstractmethod
    async def add(self, notification: Notification) -> Notification:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        pass

    @abstractmethod
    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        pass


class InMemoryNotificationStore(INotificationStore):

    def __init__(self):
        self._items: dict[str, Notification] = {}
        self._lock = asyncio.Lock()

    async def add(self, notification: Notification) -> Notification:
        async with self._lock:
            self._items[notification.notification_id] = notification
            return notification

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        async with self._lock:
            items = [
                n for n in self._items.values()
                if n.user_id == user_id and not (unread_only and n.read)
            ]
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        async with self._lock:
            notification = self._items.get(notification_id)
            if notification is None or notification.user_id != user_id:
                return False
            self._items[notification_id] = notification.model_copy(update={"read": True})
            return True


class PostgresNotificationStore(INotificationStore):

    async def add(self, notification: Notification) -> Notification:
        await Database.execute(
            """
            INSERT INTO notifications (id, user_id, type, title, message, read, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            notification.notification_id,
            notification.user_id,
            notification.type.value,
            notification.title,
            notification.message,
            notification.read,
            notification.created_at,
        )
        return notification

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        query = "SELECT * FROM notifications WHERE user_id = $1"
        if unread_only:
            query += " AND read = FALSE"
        rows = await Database.fetch_all(query + " ORDER BY created_at DESC", user_id)
        return [
            Notification(
                notification_id=row["id"],
                user_id=row["user_id"],
                type=NotificationType(row["type"]),
                title=row["title"],
                message=row["message"],
                read=row["read"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        result = await Database.execute(
            "UPDATE notifications SET read = TRUE WHERE id = $1 AND user_id = $2",
            notification_id,
            user_id,
        )
        return result == "UPDATE 1"


class NotificationService:
    """Creates the user-facing messages for lifecycle events"""

    def __init__(self, store: Optional[INotificationStore] = None):
        self.store = store or InMemoryNotificationStore()
        self._logger = structlog.get_logger().bind(component="notifications")

    async def create(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
    ) -> Optional[Notification]:
        try:
            notification = Notification(
                user_id=user_id,
                type=type,
                title=title[:100],
                message=message[:500],
            )
            return await self.store.add(notification)
        except Exception as e:
            self._logger.error("notification_failed", user_id=user_id, title=title, error=str(e))
            return None

    async def order_placed(self, user_id: str, order_id: str):
        return await self.create(
            user_id,
            NotificationType.SUCCESS,
            "Order Placed Successfully",
            f"Your order #{order_id} has been placed successfully. "
            "Please complete the payment to process your order.",
        )

    async def payment_processed(self, user_id: str, order_id: str, amount_cents: int):
        return await self.create(
            user_id,
            NotificationType.SUCCESS,
            "Payment Successful",
            f"Payment of ${cents_to_decimal_string(amount_cents)} for order #{order_id} "
            "was processed successfully.",
        )

    async def payment_failed(self, user_id: str, order_id: str, reason: Optional[str] = None):
        return await self.create(
            user_id,
            NotificationType.ERROR,
            "Payment Failed",
            f"Payment for order #{order_id} failed"
            + (f": {reason}" if reason else ".")
            + " You can retry the payment from your orders page.",
        )

    async def order_delivered(self, user_id: str, order_id: str):
        return await self.create(
            user_id,
            NotificationType.SUCCESS,
            "Order Delivered",
            f"Order #{order_id} has been delivered. Enjoy your purchase!",
        )

    async def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        return await self.store.list_for_user(user_id, unread_only=unread_only)

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        return await self.store.mark_read(user_id, notification_id)
