import asyncio

import pytest

from boutique.audit import AuditEventType
from boutique.payments import webhooks
from boutique.payments.webhooks import (
    InMemoryIdempotencyStore,
    WebhookProcessor,
    WebhookRouter,
    WebhookStatus,
    event_key,
)


class CountingHandler:
    """Fails the first ``failures`` calls, then succeeds"""

    def __init__(self, failures: int = 0, delay: float = 0):
        self.failures = failures
        self.delay = delay
        self.calls = 0

    async def __call__(self, event: dict, correlation_id: str):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise RuntimeError(f"boom {self.calls}")
        return {"order_id": event.get("order_id")}


def make_processor(handler, event_type="thing.happened") -> WebhookProcessor:
    router = WebhookRouter("acme")
    router.register(event_type)(handler)
    processor = WebhookProcessor()
    processor.add_router(router)
    return processor


async def deliver(processor, event_id="evt_1", event_type="thing.happened", correlation_id="corr-1"):
    return await processor.process("acme", event_id, event_type, {"order_id": "o-1"}, correlation_id)


# =============================================================================
# ROUTER
# =============================================================================

async def test_router_dispatches_by_event_type():
    router = WebhookRouter("acme")
    seen = []

    @router.register("a.created", "a.updated")
    async def on_a(event, correlation_id):
        seen.append((event["n"], correlation_id))
        return "ok"

    assert router.handles("a.updated")
    assert not router.handles("b.created")
    assert set(router.supported_events) == {"a.created", "a.updated"}
    assert await router.route("a.created", {"n": 1}, "c-1") == "ok"
    assert await router.route("b.created", {"n": 2}, "c-2") is None
    assert seen == [(1, "c-1")]


# =============================================================================
# IDEMPOTENCY
# =============================================================================

async def test_unhandled_event_type_is_ignored():
    handler = CountingHandler()
    outcome = await deliver(make_processor(handler), event_type="something.else")
    assert outcome.status == "ignored"
    assert not outcome.failed
    assert handler.calls == 0


async def test_redelivered_event_runs_once():
    handler = CountingHandler()
    processor = make_processor(handler)

    first = await deliver(processor)
    second = await deliver(processor)

    assert first.status == "processed"
    assert first.result == {"order_id": "o-1"}
    assert second.status == "already_processed"
    assert handler.calls == 1

    types = [e.event_type for e in await processor.audit.get_by_correlation_id("corr-1")]
    assert types.count(AuditEventType.WEBHOOK_PROCESSED) == 1


async def test_concurrent_deliveries_of_one_event_run_once():
    handler = CountingHandler(delay=0.01)
    processor = make_processor(handler)

    outcomes = await asyncio.gather(*[deliver(processor) for _ in range(5)])

    assert handler.calls == 1
    statuses = sorted(o.status for o in outcomes)
    assert statuses.count("processed") == 1
    assert set(statuses) <= {"processed", "processing_elsewhere", "already_processed"}


async def test_distinct_events_each_run():
    handler = CountingHandler()
    processor = make_processor(handler)
    await deliver(processor, event_id="evt_1")
    await deliver(processor, event_id="evt_2")
    assert handler.calls == 2


# =============================================================================
# FAILURES, RETRY AND DLQ
# =============================================================================

async def test_failure_releases_key_for_redelivery():
    handler = CountingHandler(failures=1)
    processor = make_processor(handler)

    failed = await deliver(processor)
    assert failed.status == "retry_scheduled"
    assert failed.failed
    assert failed.error == "boom 1"
    assert (await processor.get_dlq_stats())["retry_scheduled"] == 1

    redelivered = await deliver(processor)
    assert redelivered.status == "processed"
    assert handler.calls == 2

    stats = await processor.get_dlq_stats()
    assert stats["retry_scheduled"] == 0
    assert stats["processed"] == 1


async def test_repeated_failures_end_in_dead_letter_queue():
    handler = CountingHandler(failures=100)
    processor = make_processor(handler)

    statuses = [(await deliver(processor)).status for _ in range(webhooks.settings.MAX_ATTEMPTS)]

    assert statuses[:-1] == ["retry_scheduled"] * (webhooks.settings.MAX_ATTEMPTS - 1)
    assert statuses[-1] == "dead_lettered"

    parked = await processor.dlq.get(event_key("acme", "evt_1"))
    assert parked.status == WebhookStatus.DLQ
    assert parked.attempt_count == webhooks.settings.MAX_ATTEMPTS
    assert not parked.is_retriable

    entries = await processor.audit.get_by_correlation_id("corr-1")
    dlq_entries = [e for e in entries if e.event_type == AuditEventType.WEBHOOK_DLQ]
    assert len(dlq_entries) == 1
    assert dlq_entries[0].severity == "ERROR"


async def test_retry_waits_for_backoff():
    handler = CountingHandler(failures=1)
    processor = make_processor(handler)
    await deliver(processor)

    assert await processor.retry_dead_letters() == 0
    assert handler.calls == 1


async def test_retry_dead_letters_after_backoff(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "RETRY_DELAY_SECONDS", 0)
    handler = CountingHandler(failures=1)
    processor = make_processor(handler)
    await deliver(processor)

    assert await processor.retry_dead_letters() == 1
    assert handler.calls == 2
    assert (await processor.get_dlq_stats())["processed"] == 1

    # The provider's own redelivery now finds the event done
    assert (await deliver(processor)).status == "already_processed"


async def test_parked_events_replay_only_when_asked(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "RETRY_DELAY_SECONDS", 0)
    handler = CountingHandler(failures=webhooks.settings.MAX_ATTEMPTS)
    processor = make_processor(handler)
    for _ in range(webhooks.settings.MAX_ATTEMPTS):
        await deliver(processor)

    assert await processor.retry_dead_letters() == 0
    assert await processor.retry_dead_letters(include_exhausted=True) == 1

    stats = await processor.get_dlq_stats()
    assert stats == {"total": 1, "retry_scheduled": 0, "dead_lettered": 0, "processed": 1}


# =============================================================================
# IDEMPOTENCY STORE
# =============================================================================

async def test_store_claim_is_exclusive_until_released():
    store = InMemoryIdempotencyStore()

    assert await store.try_acquire("k", "worker-a")
    assert not await store.try_acquire("k", "worker-b")
    assert not await store.release("k", "worker-b")

    assert await store.release("k", "worker-a")
    assert await store.try_acquire("k", "worker-b")


async def test_store_completed_key_is_never_reacquired():
    store = InMemoryIdempotencyStore()
    await store.try_acquire("k", "worker-a")
    await store.mark_completed("k", "done")

    assert await store.is_completed("k")
    assert not await store.try_acquire("k", "worker-b")
    assert (await store.get_record("k")).result == "done"


async def test_store_expired_lease_can_be_taken_over():
    store = InMemoryIdempotencyStore(lock_timeout_seconds=0)
    assert await store.try_acquire("k", "crashed-worker")
    await asyncio.sleep(0.001)
    assert await store.try_acquire("k", "worker-b")
    assert (await store.get_record("k")).lock_holder == "worker-b"


async def test_store_purges_only_finished_records_past_ttl(monkeypatch):
    store = InMemoryIdempotencyStore()
    await store.try_acquire("done", "worker-a")
    await store.mark_completed("done")
    await store.try_acquire("busy", "worker-b")

    assert await store.purge_expired() == 0

    monkeypatch.setattr(webhooks.settings, "IDEMPOTENCY_TTL_SECONDS", 0)
    await store.try_acquire("old", "worker-c")
    await store.mark_completed("old")

    assert await store.purge_expired() == 1
    assert await store.get_record("old") is None
    assert await store.is_completed("done")
    assert (await store.get_record("busy")).status == "processing"


async def test_processor_forgets_resolved_events_after_ttl(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "IDEMPOTENCY_TTL_SECONDS", 0)
    handler = CountingHandler(failures=1)
    processor = make_processor(handler)
    await deliver(processor)
    await deliver(processor, event_id="evt_2")
    assert (await processor.get_dlq_stats())["processed"] == 0

    assert (await deliver(processor)).status == "processed"
    purged = await processor.purge_expired()

    assert purged == {"idempotency_keys": 2, "dlq_entries": 1}
    assert (await processor.get_dlq_stats())["total"] == 0


def test_event_key_is_provider_scoped():
    assert event_key("stripe", "evt_1") == "stripe:event:evt_1"
    assert event_key("stripe", "evt_1") != event_key("paypal", "evt_1")


@pytest.mark.parametrize("status,failed", [
    ("processed", False),
    ("already_processed", False),
    ("retry_scheduled", True),
    ("dead_lettered", True),
])
def test_outcome_failed_flag(status, failed):
    assert webhooks.WebhookOutcome(status=status, event_id="e", event_type="t").failed is failed
