import asyncio
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from tortoise import timezone

from conftest import RecordingSink, append_job_event
from outbox_relay.core.config import ProcessorPolicy
from outbox_relay.core.exceptions import StaleAdvance
from outbox_relay.models.cursor import ProcessorLease
from outbox_relay.models.dead_letter import DeadLetterEvent
from outbox_relay.models.outbox import OutboxEvent
from outbox_relay.services import cursor_store
from outbox_relay.services.event_store import scan_pending
from outbox_relay.services.outbox_processor import OutboxProcessor, ProcessorState, compute_backoff

PROCESSOR = "test-processor"


def make_processor(sink, policy, holder_id="worker-a"):
    return OutboxProcessor(sink, policy, processor_name=PROCESSOR, holder_id=holder_id)


class TestComputeBackoff:
    def test_doubles_per_attempt_and_caps(self, policy):
        delays = [compute_backoff(n, policy) for n in range(1, 6)]
        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.05, 0.05])

    def test_jitter_is_proportional(self, policy):
        jittery = replace(policy, backoff_jitter=0.5)
        assert compute_backoff(1, jittery, rand=lambda: 1.0) == pytest.approx(0.015)
        assert compute_backoff(1, jittery, rand=lambda: 0.0) == pytest.approx(0.01)

    def test_policy_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            ProcessorPolicy(max_attempts=0)


@pytest.mark.asyncio
async def test_delivers_in_append_order_and_advances_cursor(db, sink, policy):
    org_id = uuid4()
    events = [await append_job_event(org_id, status=s) for s in ("queued", "processing", "completed")]
    processor = make_processor(sink, policy)

    result = await processor.process_partition(org_id)

    expected = [e.event_id for e in events]
    assert result.state == ProcessorState.IDLE
    assert result.delivered == expected
    assert sink.delivered == expected
    stored = await OutboxEvent.filter(event_id__in=expected).order_by("created_at", "event_id")
    assert all(e.delivered_at is not None for e in stored)
    assert await cursor_store.get_cursor(PROCESSOR, org_id) == expected[-1]


@pytest.mark.asyncio
async def test_empty_partition_is_idle(db, sink, policy):
    result = await make_processor(sink, policy).process_partition(uuid4())

    assert result.lease_acquired
    assert result.fetched == 0
    assert result.state == ProcessorState.IDLE


@pytest.mark.asyncio
async def test_poison_pill_is_dead_lettered_after_max_attempts(db, policy):
    org_id = uuid4()
    event = await append_job_event(org_id)
    sink = RecordingSink(down={org_id})
    processor = make_processor(sink, policy)

    for _ in range(policy.max_attempts - 1):
        result = await processor.process_partition(org_id)
        assert result.state == ProcessorState.RETRYING
        assert result.retrying_event_id == event.event_id
    result = await processor.process_partition(org_id)

    assert result.dead_lettered == [event.event_id]
    assert len(sink.calls) == policy.max_attempts
    entry = await DeadLetterEvent.get(original_event_id=event.event_id)
    assert entry.delivery_attempts == 5
    assert entry.last_error == "realtime channel unavailable"
    assert await scan_pending(org_id) == []
    # Dead-lettered events do not move the cursor
    assert await cursor_store.get_cursor(PROCESSOR, org_id) is None


@pytest.mark.asyncio
async def test_failed_event_blocks_later_events(db, policy):
    org_id = uuid4()
    first = await append_job_event(org_id)
    await append_job_event(org_id)

    class FailFirstSink(RecordingSink):
        async def deliver(self, event):
            self.calls.append(event.event_id)
            if event.event_id == first.event_id:
                raise RuntimeError("connection reset")
            return True

    sink = FailFirstSink()
    result = await make_processor(sink, policy).process_partition(org_id)

    assert result.state == ProcessorState.RETRYING
    assert result.retry_after == pytest.approx(policy.backoff_base)
    assert sink.calls == [first.event_id]
    stored = await OutboxEvent.get(event_id=first.event_id)
    assert stored.delivery_attempts == 1
    assert stored.last_error == "connection reset"


@pytest.mark.asyncio
async def test_batch_continues_after_dead_letter(db, sink, policy):
    org_id = uuid4()
    poisoned = await append_job_event(org_id)
    poisoned.delivery_attempts = policy.max_attempts
    await poisoned.save()
    healthy = await append_job_event(org_id)

    result = await make_processor(sink, policy).process_partition(org_id)

    # Budget already spent: moved to the DLQ without another delivery attempt
    assert poisoned.event_id not in sink.calls
    assert result.dead_lettered == [poisoned.event_id]
    assert result.delivered == [healthy.event_id]
    assert await cursor_store.get_cursor(PROCESSOR, org_id) == healthy.event_id


@pytest.mark.asyncio
async def test_sink_rejection_counts_as_failure(db, policy):
    org_id = uuid4()
    event = await append_job_event(org_id)
    sink = AsyncMock()
    sink.deliver.return_value = False

    result = await make_processor(sink, policy).process_partition(org_id)

    assert result.state == ProcessorState.RETRYING
    stored = await OutboxEvent.get(event_id=event.event_id)
    assert stored.delivered_at is None
    assert stored.last_error == "Sink rejected the event"


@pytest.mark.asyncio
async def test_sink_timeout_counts_as_failure(db, policy):
    org_id = uuid4()
    event = await append_job_event(org_id)

    class HangingSink:
        async def deliver(self, event):
            await asyncio.sleep(5)
            return True

    processor = make_processor(HangingSink(), replace(policy, delivery_timeout=0.05))
    result = await processor.process_partition(org_id)

    assert result.state == ProcessorState.RETRYING
    stored = await OutboxEvent.get(event_id=event.event_id)
    assert stored.delivery_attempts == 1
    assert "timed out" in stored.last_error


@pytest.mark.asyncio
async def test_one_tenant_down_does_not_block_another(db, policy):
    down_org, up_org = uuid4(), uuid4()
    await append_job_event(down_org)
    up_events = [await append_job_event(up_org) for _ in range(2)]
    sink = RecordingSink(down={down_org})
    processor = make_processor(sink, policy)

    down_result, up_result = await asyncio.gather(
        processor.process_partition(down_org),
        processor.process_partition(up_org),
    )

    assert down_result.state == ProcessorState.RETRYING
    assert up_result.delivered == [e.event_id for e in up_events]
    assert await cursor_store.get_cursor(PROCESSOR, up_org) == up_events[-1].event_id
    assert await cursor_store.get_cursor(PROCESSOR, down_org) is None


@pytest.mark.asyncio
async def test_crash_before_cursor_advance_redelivers_once(db, sink, policy):
    org_id = uuid4()
    events = [await append_job_event(org_id) for _ in range(3)]
    real_advance = cursor_store.advance_cursor
    crashed = []

    async def crash_once(*args, **kwargs):
        if not crashed:
            crashed.append(True)
            raise RuntimeError("process killed")
        return await real_advance(*args, **kwargs)

    processor = make_processor(sink, policy)
    with patch("outbox_relay.services.outbox_processor.advance_cursor", crash_once):
        with pytest.raises(RuntimeError):
            await processor.process_partition(org_id)

        # delivered_at rolled back together with the cursor
        assert await cursor_store.get_cursor(PROCESSOR, org_id) is None
        assert (await OutboxEvent.get(event_id=events[0].event_id)).delivered_at is None

        # Restarted worker
        result = await make_processor(sink, policy).process_partition(org_id)

    ids = [e.event_id for e in events]
    assert sink.calls == [ids[0]] + ids
    assert result.delivered == ids
    assert await cursor_store.get_cursor(PROCESSOR, org_id) == ids[-1]


@pytest.mark.asyncio
async def test_partition_leased_elsewhere_is_skipped(db, sink, policy):
    org_id = uuid4()
    await append_job_event(org_id)
    owner = make_processor(sink, policy, holder_id="worker-a")
    other = make_processor(sink, policy, holder_id="worker-b")
    assert await owner.lease_for(org_id).acquire()

    result = await other.process_partition(org_id)

    assert result.lease_acquired is False
    assert sink.calls == []


@pytest.mark.asyncio
async def test_stale_cursor_read_raises_and_releases_lease(db, sink, policy):
    org_id = uuid4()
    events = [await append_job_event(org_id) for _ in range(3)]
    await cursor_store.advance_cursor(PROCESSOR, org_id, events[-1].event_id)
    processor = make_processor(sink, policy)

    with patch("outbox_relay.services.outbox_processor.get_cursor", AsyncMock(return_value=None)):
        with pytest.raises(StaleAdvance):
            await processor.process_partition(org_id)

    assert await cursor_store.get_cursor(PROCESSOR, org_id) == events[-1].event_id
    assert (await OutboxEvent.get(event_id=events[0].event_id)).delivered_at is None
    lease = await ProcessorLease.get(processor_name=PROCESSOR, organization_id=org_id)
    assert lease.holder_id is None


class TestLeaseFencing:
    def test_policy_rejects_delivery_timeout_longer_than_lease(self):
        with pytest.raises(ValueError):
            ProcessorPolicy(lease_ttl=1.0, delivery_timeout=1.0)

    @pytest.mark.asyncio
    async def test_takeover_during_delivery_blocks_the_commit(self, db, policy):
        org_id = uuid4()
        event = await append_job_event(org_id)
        other = make_processor(RecordingSink(), policy, holder_id="worker-b")

        class SlowSink(RecordingSink):
            async def deliver(self, event):
                # Lease runs out while the sink call is in flight and worker-b takes over
                await ProcessorLease.filter(processor_name=PROCESSOR, organization_id=org_id).update(
                    expires_at=timezone.now()
                )
                assert await other.lease_for(org_id).acquire()
                return await super().deliver(event)

        sink = SlowSink()
        result = await make_processor(sink, policy, holder_id="worker-a").process_partition(org_id)

        assert result.lease_acquired is False
        assert result.delivered == []
        assert sink.calls == [event.event_id]
        assert (await OutboxEvent.get(event_id=event.event_id)).delivered_at is None
        assert await cursor_store.get_cursor(PROCESSOR, org_id) is None
        lease = await ProcessorLease.get(processor_name=PROCESSOR, organization_id=org_id)
        assert lease.holder_id == "worker-b"

    @pytest.mark.asyncio
    async def test_lease_lost_between_events_stops_the_batch(self, db, sink, policy):
        org_id = uuid4()
        first = await append_job_event(org_id)
        await append_job_event(org_id)

        class HandoverProcessor(OutboxProcessor):
            async def _advance(self, organization_id, event, lease, result):
                await super()._advance(organization_id, event, lease, result)
                await ProcessorLease.filter(processor_name=PROCESSOR, organization_id=organization_id).update(
                    holder_id="worker-b", expires_at=timezone.now() + timedelta(seconds=30)
                )

        processor = HandoverProcessor(sink, policy, processor_name=PROCESSOR, holder_id="worker-a")
        result = await processor.process_partition(org_id)

        assert result.lease_acquired is False
        assert result.delivered == [first.event_id]
        assert sink.calls == [first.event_id]
        assert await cursor_store.get_cursor(PROCESSOR, org_id) == first.event_id


@pytest.mark.asyncio
async def test_leftover_of_earlier_dead_letter_is_discarded(db, sink, policy):
    org_id = uuid4()
    event = await append_job_event(org_id)
    event.delivery_attempts = policy.max_attempts
    await event.save()
    # A previous run copied the event to the DLQ but the outbox row survived
    await DeadLetterEvent.create(
        original_event_id=event.event_id,
        organization_id=org_id,
        event_type=event.event_type,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        event_data=event.event_data,
        delivery_attempts=policy.max_attempts,
        last_error="HTTP 503",
    )

    result = await make_processor(sink, policy).process_partition(org_id)

    assert result.state == ProcessorState.IDLE
    assert result.dead_lettered == [event.event_id]
    assert sink.calls == []
    assert await OutboxEvent.filter(event_id=event.event_id).count() == 0
    entries = await DeadLetterEvent.filter(original_event_id=event.event_id)
    assert len(entries) == 1
    assert entries[0].last_error == "HTTP 503"
