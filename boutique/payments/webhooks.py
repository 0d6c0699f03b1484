"""
Webhook plumbing shared by the Stripe and PayPal gateways.

- Idempotency store: one key per provider event id. A delivery is processed
  only by whoever acquires the key; a completed key short-circuits every
  later redelivery of the same event.
- Webhook router: handler registration per raw provider event type.
- Dead letter queue: failed deliveries are tracked with linear backoff and
  parked after WEBHOOK_MAX_ATTEMPTS.
- Records older than IDEMPOTENCY_TTL_SECONDS are purged by the reconciliation
  loop.
"""

import asyncio
import os
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field

from boutique.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from boutique.database import Database
from boutique.orders.models import utcnow


# =============================================================================
# CONFIGURATION
# =============================================================================

class WebhookSettings:
    MAX_ATTEMPTS = int(os.getenv("WEBHOOK_MAX_ATTEMPTS", "3"))
    RETRY_DELAY_SECONDS = int(os.getenv("WEBHOOK_RETRY_DELAY_SECONDS", "60"))

    # How long a "processing" claim is honoured before another worker may take over
    LOCK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_LOCK_TIMEOUT_SECONDS", "30"))
    # Completed keys and resolved DLQ entries are forgotten after this long
    IDEMPOTENCY_TTL_SECONDS = int(os.getenv("WEBHOOK_IDEMPOTENCY_TTL_SECONDS", str(86400 * 7)))  # 7 days


settings = WebhookSettings()


# =============================================================================
# MODELS
# =============================================================================

class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # retry scheduled
    DLQ = "dead_letter_queue"  # retries exhausted


class WebhookEvent(BaseModel):
    """Tracked webhook delivery"""
    event_key: str
    provider: str
    provider_event_id: str
    event_type: str
    payload: dict
    correlation_id: str
    status: WebhookStatus = WebhookStatus.PENDING
    attempt_count: int = 0
    max_attempts: int = settings.MAX_ATTEMPTS
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    @computed_field
    @property
    def is_retriable(self) -> bool:
        return self.attempt_count < self.max_attempts and self.status != WebhookStatus.DLQ


class IdempotencyRecord(BaseModel):
    key: str
    status: str  # "processing", "completed", "released"
    result: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(
        default_factory=lambda: utcnow() + timedelta(seconds=settings.IDEMPOTENCY_TTL_SECONDS)
    )
    lock_holder: Optional[str] = None
    lease_until: Optional[datetime] = None


def event_key(provider: str, provider_event_id: str) -> str:
    return f"{provider}:event:{provider_event_id}"


# =============================================================================
# IDEMPOTENCY STORE
# =============================================================================

class IIdempotencyStore(ABC):
    """Idempotency store interface with lease-based locking"""

    @abstractmethod
    async def try_acquire(self, key: str, holder_id: str) -> bool:
        """Claim ``key`` for processing. False if completed or claimed by someone else."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        """Give up a claim so a redelivery can try again."""
        pass

    @abstractmethod
    async def mark_completed(self, key: str, result: str = "success") -> bool:
        pass

    @abstractmethod
    async def is_completed(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop finished records past their TTL. Live claims are kept."""
        pass


class InMemoryIdempotencyStore(IIdempotencyStore):

    def __init__(self, lock_timeout_seconds: float = settings.LOCK_TIMEOUT_SECONDS):
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()
        self._lease = timedelta(seconds=lock_timeout_seconds)

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            now = utcnow()
            existing = self._records.get(key)
            if existing:
                if existing.status == "completed":
                    return False
                if (
                    existing.status == "processing"
                    and existing.lock_holder != holder_id
                    and existing.lease_until
                    and existing.lease_until > now
                ):
                    return False

            self._records[key] = IdempotencyRecord(
                key=key,
                status="processing",
                lock_holder=holder_id,
                lease_until=now + self._lease,
            )
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record or record.lock_holder != holder_id or record.status != "processing":
                return False
            self._records[key] = record.model_copy(
                update={"status": "released", "lock_holder": None, "lease_until": None}
            )
            return True

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record:
                return False
            self._records[key] = record.model_copy(
                update={"status": "completed", "result": result, "lock_holder": None, "lease_until": None}
            )
            return True

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            return record is not None and record.status == "completed"

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self._lock:
            return self._records.get(key)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = utcnow()
            expired = [
                key for key, record in self._records.items()
                if record.status != "processing" and record.expires_at <= now
            ]
            for key in expired:
                del self._records[key]
            return len(expired)


class PostgresIdempotencyStore(IIdempotencyStore):
    """webhook_events table; INSERT .. ON CONFLICT gives the atomic claim"""

    def __init__(self, lock_timeout_seconds: float = settings.LOCK_TIMEOUT_SECONDS):
        self._lease = timedelta(seconds=lock_timeout_seconds)

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        row = await Database.fetch_one(
            """
            INSERT INTO webhook_events (key, status, lock_holder, expires_at)
            VALUES ($1, 'processing', $2, $3)
            ON CONFLICT (key) DO UPDATE
                SET status = 'processing',
                    lock_holder = EXCLUDED.lock_holder,
                    expires_at = EXCLUDED.expires_at
                WHERE webhook_events.status = 'released'
                   OR (webhook_events.status = 'processing' AND webhook_events.expires_at < NOW())
            RETURNING key
            """,
            key,
            holder_id,
            utcnow() + self._lease,
        )
        return row is not None

    async def release(self, key: str, holder_id: str) -> bool:
        result = await Database.execute(
            """
            UPDATE webhook_events SET status = 'released', lock_holder = NULL
            WHERE key = $1 AND lock_holder = $2 AND status = 'processing'
            """,
            key,
            holder_id,
        )
        return result == "UPDATE 1"

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        outcome = await Database.execute(
            """
            UPDATE webhook_events SET status = 'completed', result = $2, lock_holder = NULL
            WHERE key = $1
            """,
            key,
            result,
        )
        return outcome == "UPDATE 1"

    async def is_completed(self, key: str) -> bool:
        row = await Database.fetch_one(
            "SELECT 1 FROM webhook_events WHERE key = $1 AND status = 'completed'", key
        )
        return row is not None

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        row = await Database.fetch_one("SELECT * FROM webhook_events WHERE key = $1", key)
        if row is None:
            return None
        return IdempotencyRecord(
            key=row["key"],
            status=row["status"],
            result=row["result"],
            created_at=row["created_at"],
            lock_holder=row["lock_holder"],
            lease_until=row["expires_at"],
        )

    async def purge_expired(self) -> int:
        # expires_at holds the lease here, so the TTL runs from created_at
        result = await Database.execute(
            """
            DELETE FROM webhook_events
            WHERE status <> 'processing' AND created_at < $1
            """,
            utcnow() - timedelta(seconds=settings.IDEMPOTENCY_TTL_SECONDS),
        )
        return int(result.split()[-1])


# =============================================================================
# DEAD LETTER QUEUE
# =============================================================================

class IDeadLetterQueue(ABC):
    """Failed webhook tracking"""

    @abstractmethod
    async def enqueue(self, event: WebhookEvent) -> None:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 100, include_exhausted: bool = False) -> list[WebhookEvent]:
        pass

    @abstractmethod
    async def get(self, event_key: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def mark_processed(self, event_key: str) -> None:
        pass

    @abstractmethod
    async def purge_processed(self, older_than: datetime) -> int:
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass


class InMemoryDeadLetterQueue(IDeadLetterQueue):

    def __init__(self):
        self._queue: dict[str, WebhookEvent] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, event: WebhookEvent) -> None:
        async with self._lock:
            self._queue[event.event_key] = event

    async def get_pending(self, limit: int = 100, include_exhausted: bool = False) -> list[WebhookEvent]:
        async with self._lock:
            now = utcnow()
            pending = [
                e for e in self._queue.values()
                if (e.status == WebhookStatus.FAILED and (e.next_retry_at is None or e.next_retry_at <= now))
                or (include_exhausted and e.status == WebhookStatus.DLQ)
            ]
            return pending[:limit]

    async def get(self, event_key: str) -> Optional[WebhookEvent]:
        async with self._lock:
            return self._queue.get(event_key)

    async def mark_processed(self, event_key: str) -> None:
        async with self._lock:
            if event_key in self._queue:
                self._queue[event_key] = self._queue[event_key].model_copy(update={
                    "status": WebhookStatus.COMPLETED,
                    "processed_at": utcnow(),
                })

    async def purge_processed(self, older_than: datetime) -> int:
        async with self._lock:
            done = [
                key for key, event in self._queue.items()
                if event.status == WebhookStatus.COMPLETED
                and event.processed_at is not None
                and event.processed_at <= older_than
            ]
            for key in done:
                del self._queue[key]
            return len(done)

    async def get_stats(self) -> dict:
        async with self._lock:
            events = list(self._queue.values())
        return {
            "total": len(events),
            "retry_scheduled": sum(1 for e in events if e.status == WebhookStatus.FAILED),
            "dead_lettered": sum(1 for e in events if e.status == WebhookStatus.DLQ),
            "processed": sum(1 for e in events if e.status == WebhookStatus.COMPLETED),
        }


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Any]


class WebhookRouter:
    """Maps raw provider event types to async handlers"""

    def __init__(self, provider: str):
        self.provider = provider
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router", provider=provider)

    def register(self, *event_types: str):
        """Decorator to register a handler for one or more event types"""
        def decorator(handler: WebhookHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def route(self, event_type: str, event: dict, correlation_id: str) -> Optional[Any]:
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type)
            return None
        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# PROCESSOR
# =============================================================================

class WebhookOutcome(BaseModel):
    status: str  # processed | ignored | already_processed | processing_elsewhere | retry_scheduled | dead_lettered
    event_id: str
    event_type: str
    result: Optional[Any] = None
    error: Optional[str] = None

    @computed_field
    @property
    def failed(self) -> bool:
        return self.status in ("retry_scheduled", "dead_lettered")


class WebhookProcessor:
    """Idempotent webhook execution with retry tracking and a DLQ"""

    def __init__(
        self,
        idempotency: Optional[IIdempotencyStore] = None,
        dlq: Optional[IDeadLetterQueue] = None,
        audit_log: Optional[IAuditLog] = None,
    ):
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.dlq = dlq or InMemoryDeadLetterQueue()
        self.audit = audit_log or InMemoryAuditLog()
        self._routers: dict[str, WebhookRouter] = {}
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="webhook_processor",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    def add_router(self, router: WebhookRouter) -> None:
        self._routers[router.provider] = router

    async def _emit_audit(self, event_type: AuditEventType, event: WebhookEvent, **metadata):
        await self.audit.append(AuditLogEntry(
            correlation_id=event.correlation_id,
            event_type=event_type,
            entity_type="webhook",
            entity_id=event.provider_event_id,
            metadata={"provider": event.provider, "event_type": event.event_type, **metadata},
            actor="webhook",
            severity="ERROR" if event_type == AuditEventType.WEBHOOK_DLQ else "INFO",
        ))

    async def process(
        self,
        provider: str,
        provider_event_id: str,
        event_type: str,
        payload: dict,
        correlation_id: Optional[str] = None,
    ) -> WebhookOutcome:
        correlation_id = correlation_id or str(uuid.uuid4())
        router = self._routers[provider]
        log = self._get_logger(correlation_id)

        log.info("webhook_received", provider=provider, event_type=event_type, event_id=provider_event_id)

        if not router.handles(event_type):
            log.info("webhook_ignored", event_type=event_type)
            return WebhookOutcome(status="ignored", event_id=provider_event_id, event_type=event_type)

        event = WebhookEvent(
            event_key=event_key(provider, provider_event_id),
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            correlation_id=correlation_id,
        )
        # Provider redeliveries continue the attempt count of an earlier failure
        previous = await self.dlq.get(event.event_key)
        if previous is not None:
            event.attempt_count = previous.attempt_count

        await self._emit_audit(AuditEventType.WEBHOOK_RECEIVED, event)
        return await self._attempt(event)

    async def _attempt(self, event: WebhookEvent) -> WebhookOutcome:
        log = self._get_logger(event.correlation_id)
        holder_id = str(uuid.uuid4())

        acquired = await self.idempotency.try_acquire(event.event_key, holder_id)
        if not acquired:
            if await self.idempotency.is_completed(event.event_key):
                log.info("webhook_already_processed", event_id=event.provider_event_id)
                await self.dlq.mark_processed(event.event_key)
                return WebhookOutcome(
                    status="already_processed",
                    event_id=event.provider_event_id,
                    event_type=event.event_type,
                )
            log.info("webhook_processing_elsewhere", event_id=event.provider_event_id)
            return WebhookOutcome(
                status="processing_elsewhere",
                event_id=event.provider_event_id,
                event_type=event.event_type,
            )

        event.attempt_count += 1
        event.status = WebhookStatus.PROCESSING

        try:
            result = await self._routers[event.provider].route(
                event.event_type, event.payload, event.correlation_id
            )
        except Exception as e:
            # Let a redelivery (or our own retry) claim the key again
            await self.idempotency.release(event.event_key, holder_id)
            return await self._record_failure(event, e)

        await self.idempotency.mark_completed(event.event_key, str(result)[:500] if result else "success")
        await self.dlq.mark_processed(event.event_key)
        event.status = WebhookStatus.COMPLETED
        event.processed_at = utcnow()

        await self._emit_audit(AuditEventType.WEBHOOK_PROCESSED, event, attempts=event.attempt_count)
        log.info("webhook_processed", event_type=event.event_type, attempts=event.attempt_count)

        return WebhookOutcome(
            status="processed",
            event_id=event.provider_event_id,
            event_type=event.event_type,
            result=result,
        )

    async def _record_failure(self, event: WebhookEvent, error: Exception) -> WebhookOutcome:
        log = self._get_logger(event.correlation_id)
        event.last_error = str(error)

        if event.is_retriable:
            event.status = WebhookStatus.FAILED
            event.next_retry_at = utcnow() + timedelta(
                seconds=settings.RETRY_DELAY_SECONDS * event.attempt_count
            )
            await self.dlq.enqueue(event)
            await self._emit_audit(AuditEventType.WEBHOOK_FAILED, event, error=str(error))
            log.warning(
                "webhook_retry_scheduled",
                attempt=event.attempt_count,
                next_retry=event.next_retry_at.isoformat(),
                error=str(error),
                exc_info=True,
            )
            status = "retry_scheduled"
        else:
            event.status = WebhookStatus.DLQ
            await self.dlq.enqueue(event)
            await self._emit_audit(
                AuditEventType.WEBHOOK_DLQ, event, error=str(error), attempts=event.attempt_count
            )
            log.error(
                "webhook_dlq",
                event_type=event.event_type,
                attempts=event.attempt_count,
                error=str(error),
            )
            status = "dead_lettered"

        return WebhookOutcome(
            status=status,
            event_id=event.provider_event_id,
            event_type=event.event_type,
            error=str(error),
        )

    async def retry_dead_letters(self, include_exhausted: bool = False, limit: int = 100) -> int:
        """Re-run failed deliveries whose backoff has elapsed. Returns how many succeeded."""
        pending = await self.dlq.get_pending(limit=limit, include_exhausted=include_exhausted)
        succeeded = 0

        for event in pending:
            retry = event.model_copy(deep=True)
            if retry.status == WebhookStatus.DLQ:
                # Manual replay of a parked event gets a fresh attempt budget
                retry.max_attempts = retry.attempt_count + 1
                retry.status = WebhookStatus.FAILED
            outcome = await self._attempt(retry)
            if outcome.status in ("processed", "already_processed"):
                succeeded += 1

        return succeeded

    async def get_dlq_stats(self) -> dict:
        return await self.dlq.get_stats()

    async def purge_expired(self) -> dict:
        """Forget idempotency keys and resolved DLQ entries older than the TTL."""
        cutoff = utcnow() - timedelta(seconds=settings.IDEMPOTENCY_TTL_SECONDS)
        purged = {
            "idempotency_keys": await self.idempotency.purge_expired(),
            "dlq_entries": await self.dlq.purge_processed(cutoff),
        }
        if any(purged.values()):
            self._base_logger.info("webhook_records_purged", **purged)
        return purged
