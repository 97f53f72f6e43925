from typing import List, Optional, Set
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

from outbox_relay.core.config import ProcessorPolicy
from outbox_relay.core.db import close_db, init_db
from outbox_relay.core.exceptions import DeliveryFailure
from outbox_relay.events.outbox_utility import append


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with the outbox schema for each test."""
    await init_db("sqlite://:memory:")
    yield
    await close_db()


@pytest.fixture
def policy():
    # No jitter so backoff values are exact
    return ProcessorPolicy(max_attempts=5, batch_size=10, backoff_base=0.01, backoff_max=0.05,
                           backoff_jitter=0.0, lease_ttl=30.0, delivery_timeout=1.0, poll_interval=0.01)


class RecordingSink:
    """Delivery sink double: records every call and fails for tenants marked down."""

    def __init__(self, down: Optional[Set[UUID]] = None):
        self.down = set(down or ())
        self.calls: List[UUID] = []
        self.delivered: List[UUID] = []

    async def deliver(self, event):
        self.calls.append(event.event_id)
        if event.organization_id in self.down:
            raise DeliveryFailure("realtime channel unavailable")
        self.delivered.append(event.event_id)
        return True


@pytest.fixture
def sink():
    return RecordingSink()


async def append_job_event(organization_id: UUID, event_type: str = "updated", **data):
    job_id = uuid4()
    return await append(
        organization_id=organization_id,
        event_type=event_type,
        entity_type="cataloging_job",
        entity_id=job_id,
        event_data={"job_id": str(job_id), **data},
    )
