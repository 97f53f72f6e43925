import asyncio
import logging
from typing import Dict, List, Optional
from uuid import UUID

from outbox_relay.core.config import LOG_LEVEL, ProcessorPolicy
from outbox_relay.core.db import close_db, init_db
from outbox_relay.core.exceptions import OrderingViolation
from outbox_relay.services.event_store import pending_organizations
from outbox_relay.services.outbox_processor import OutboxProcessor, ProcessorState
from outbox_relay.services.sinks import build_sink

logger = logging.getLogger(__name__)


async def _process_once(processor: OutboxProcessor, organization_id: UUID, slots: Optional[asyncio.Semaphore]):
    if slots is None:
        return await processor.process_partition(organization_id)
    async with slots:
        return await processor.process_partition(organization_id)


async def run_partition_worker(
    processor: OutboxProcessor,
    organization_id: UUID,
    slots: Optional[asyncio.Semaphore] = None,
):
    """
    Drains one tenant's queue, sleeping through retry backoff, until the queue
    is empty or the partition is owned by someone else.

    A slot from `slots` is held only while a batch runs, never across a
    backoff sleep, so tenants stuck in retry do not starve the others.
    """
    lease = processor.lease_for(organization_id)
    try:
        while True:
            result = await _process_once(processor, organization_id, slots)
            if not result.lease_acquired:
                return
            if result.state == ProcessorState.RETRYING:
                await asyncio.sleep(result.retry_after or processor.policy.poll_interval)
                continue
            if result.fetched < processor.policy.batch_size:
                return
    except OrderingViolation:
        # Lease already released by the processor; this worker must not continue
        logger.critical("Partition worker for organization %s stopped after an ordering violation", organization_id)
        return
    except Exception:
        logger.exception("Partition worker for organization %s crashed", organization_id)
    finally:
        try:
            await lease.release()
        except Exception:
            # Lease expires on its own after lease_ttl
            logger.exception("Could not release lease for organization %s", organization_id)


class OutboxPoller:
    """Discovers tenants with pending events and runs one worker task per tenant."""

    def __init__(self, processor: OutboxProcessor, policy: Optional[ProcessorPolicy] = None):
        self.processor = processor
        self.policy = policy or processor.policy
        self._workers: Dict[UUID, asyncio.Task] = {}
        self._slots = asyncio.Semaphore(self.policy.max_concurrent_partitions)
        self._running = False

    @property
    def active_partitions(self) -> List[UUID]:
        return [org_id for org_id, task in self._workers.items() if not task.done()]

    async def _run_partition(self, organization_id: UUID):
        await run_partition_worker(self.processor, organization_id, self._slots)

    def _reap(self):
        for org_id in [org_id for org_id, task in self._workers.items() if task.done()]:
            del self._workers[org_id]

    async def poll_outbox_for_new_events(self) -> List[UUID]:
        """Starts workers for tenants with pending events that have none running."""
        self._reap()
        for org_id in await pending_organizations():
            if org_id not in self._workers:
                self._workers[org_id] = asyncio.create_task(
                    self._run_partition(org_id), name=f"outbox-partition-{org_id}"
                )
        return self.active_partitions

    async def wait_idle(self):
        """Waits for every running partition worker to finish."""
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._reap()

    async def run_forever(self):
        self._running = True
        logger.info("--- Outbox Poller Service Started (%s) ---", self.processor.processor_name)
        while self._running:
            try:
                await self.poll_outbox_for_new_events()
            except Exception:
                logger.exception("Poller encountered a critical DB error")

            await asyncio.sleep(self.policy.poll_interval)

    async def stop(self):
        self._running = False
        for task in self._workers.values():
            task.cancel()
        await self.wait_idle()
        logger.info("Outbox poller stopped.")


async def start_outbox_poller():
    """Main loop for the processor service."""
    await init_db()
    policy = ProcessorPolicy.from_env()
    sink = build_sink()
    poller = OutboxPoller(OutboxProcessor(sink, policy))
    try:
        await poller.run_forever()
    finally:
        await poller.stop()
        if hasattr(sink, "aclose"):
            await sink.aclose()
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    try:
        asyncio.run(start_outbox_poller())
    except KeyboardInterrupt:
        logger.info("Poller service stopped.")
