"""
Outbox processor: delivers one tenant's pending events to the delivery sink,
strictly in (created_at, event_id) order.

Per (processor_name, organization_id) partition each call to
``process_partition`` walks the state machine

    IDLE -> FETCHING -> DELIVERING -> {ADVANCING, RETRYING, DEAD_LETTERING} -> IDLE

A failed event below the attempt budget stops the batch so nothing behind it
is delivered first. An event that reaches the budget is moved to the dead
letter queue and the batch carries on.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.transactions import in_transaction

from outbox_relay.core.config import PROCESSOR_NAME, ProcessorPolicy
from outbox_relay.core.exceptions import AlreadyDeadLettered, LeaseLost, OrderingViolation, PoisonPill
from outbox_relay.models.outbox import OutboxEvent
from outbox_relay.services.cursor_store import advance_cursor, get_cursor
from outbox_relay.services.dead_letter_store import DEFAULT_DLQ_ERROR, dead_letter
from outbox_relay.services.event_store import discard, mark_delivered, record_failure, scan_pending
from outbox_relay.services.lease import PartitionLease, default_holder_id
from outbox_relay.services.sinks import DeliverySink

logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    DELIVERING = "DELIVERING"
    ADVANCING = "ADVANCING"
    RETRYING = "RETRYING"
    DEAD_LETTERING = "DEAD_LETTERING"


@dataclass
class PartitionResult:
    """Outcome of one process_partition call."""
    organization_id: UUID
    lease_acquired: bool = True
    state: ProcessorState = ProcessorState.IDLE
    fetched: int = 0
    delivered: List[UUID] = field(default_factory=list)
    dead_lettered: List[UUID] = field(default_factory=list)
    retrying_event_id: Optional[UUID] = None
    retry_after: Optional[float] = None


def compute_backoff(attempts: int, policy: ProcessorPolicy, rand: Callable[[], float] = random.random) -> float:
    """Exponential delay capped at backoff_max, plus up to backoff_jitter of itself at random."""
    delay = min(policy.backoff_max, policy.backoff_base * (2 ** max(attempts - 1, 0)))
    return min(policy.backoff_max, delay * (1 + policy.backoff_jitter * rand()))


class OutboxProcessor:
    """
    Stateless between calls: the cursor is re-read from the cursor store on
    every iteration, so instances can be restarted or scaled out freely.
    """

    def __init__(
        self,
        sink: DeliverySink,
        policy: Optional[ProcessorPolicy] = None,
        processor_name: str = PROCESSOR_NAME,
        holder_id: Optional[str] = None,
    ):
        self.sink = sink
        self.policy = policy or ProcessorPolicy()
        self.processor_name = processor_name
        self.holder_id = holder_id or default_holder_id()

    def lease_for(self, organization_id: UUID) -> PartitionLease:
        return PartitionLease(self.processor_name, organization_id, self.holder_id, self.policy.lease_ttl)

    async def process_partition(self, organization_id: UUID) -> PartitionResult:
        """
        Runs one fetch-and-deliver iteration for a tenant.

        Returns with lease_acquired=False if another worker owns the partition.
        OrderingViolation is re-raised after the lease has been released.
        """
        result = PartitionResult(organization_id=organization_id)
        lease = self.lease_for(organization_id)

        if not await lease.acquire():
            logger.debug("Partition %s/%s is leased elsewhere", self.processor_name, organization_id)
            result.lease_acquired = False
            return result

        try:
            await self._run_batch(organization_id, lease, result)
        except LeaseLost as exc:
            logger.warning("Stopping batch: %s", exc)
            result.lease_acquired = False
            result.state = ProcessorState.IDLE
        except OrderingViolation as exc:
            logger.critical(
                "Ordering violation on %s/%s, relinquishing lease: %s",
                self.processor_name, organization_id, exc,
            )
            await lease.release()
            raise
        return result

    async def _run_batch(self, organization_id: UUID, lease: PartitionLease, result: PartitionResult):
        result.state = ProcessorState.FETCHING
        cursor = await get_cursor(self.processor_name, organization_id)
        events = await scan_pending(organization_id, cursor, self.policy.batch_size)
        result.fetched = len(events)

        if not events:
            result.state = ProcessorState.IDLE
            return

        for event in events:
            await lease.renew()

            if event.delivery_attempts >= self.policy.max_attempts:
                # Budget already spent, e.g. a crash before the previous dead-letter committed
                await self._dead_letter(event, result)
                continue

            result.state = ProcessorState.DELIVERING
            error = await self._attempt_delivery(event)

            if error is None:
                result.state = ProcessorState.ADVANCING
                await self._advance(organization_id, event, lease, result)
                continue

            await record_failure(event, error)
            if event.delivery_attempts < self.policy.max_attempts:
                result.state = ProcessorState.RETRYING
                result.retrying_event_id = event.event_id
                result.retry_after = compute_backoff(event.delivery_attempts, self.policy)
                logger.warning(
                    "Delivery of %s failed (attempt %s/%s), retrying in %.2fs: %s",
                    event, event.delivery_attempts, self.policy.max_attempts, result.retry_after, error,
                )
                # Nothing behind this event may be delivered until it resolves
                return

            await self._dead_letter(event, result)

        result.state = ProcessorState.IDLE

    async def _attempt_delivery(self, event: OutboxEvent) -> Optional[str]:
        """Calls the sink. Returns None on success or the failure reason."""
        try:
            delivered = await asyncio.wait_for(self.sink.deliver(event), timeout=self.policy.delivery_timeout)
        except asyncio.TimeoutError:
            return f"Delivery timed out after {self.policy.delivery_timeout}s"
        except Exception as exc:
            # Sink errors of any kind count as a failed attempt
            return str(exc) or exc.__class__.__name__

        if delivered is False:
            return "Sink rejected the event"
        return None

    async def _advance(
        self, organization_id: UUID, event: OutboxEvent, lease: PartitionLease, result: PartitionResult
    ):
        delivered_at = timezone.now()
        # delivered_at and the cursor move together, or not at all, and only for the live lease holder
        async with in_transaction() as conn:
            await lease.fence(conn)
            marked = await mark_delivered(event, conn=conn, delivered_at=delivered_at)
            await advance_cursor(self.processor_name, organization_id, event.event_id, delivered_at, conn=conn)

        if not marked:
            logger.warning("Event %s was already marked delivered", event)
        result.delivered.append(event.event_id)

    async def _dead_letter(self, event: OutboxEvent, result: PartitionResult):
        result.state = ProcessorState.DEAD_LETTERING
        poison = PoisonPill(event.event_id, event.delivery_attempts, event.last_error or DEFAULT_DLQ_ERROR)
        try:
            entry = await dead_letter(event, poison.last_error)
        except AlreadyDeadLettered:
            logger.warning("Event %s was already dead-lettered; dropping the outbox copy", event)
            await discard(event)
        else:
            logger.error(
                "Dead-lettered %s as %s (organization=%s entity=%s/%s): %s",
                event, entry.dlq_id, event.organization_id, event.entity_type.value, event.entity_id, poison,
            )
        result.dead_lettered.append(event.event_id)
