import logging
import os
import socket
import uuid
from datetime import timedelta
from typing import Any
from uuid import UUID

from tortoise import timezone
from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q

from outbox_relay.core.exceptions import LeaseLost
from outbox_relay.models.cursor import ProcessorLease

logger = logging.getLogger(__name__)


def default_holder_id() -> str:
    """Identifies one processor instance across hosts and processes."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class PartitionLease:
    """
    Compare-and-swap lease on a (processor_name, organization_id) row.

    A holder keeps the partition while it renews within `ttl` seconds. An
    expired or released lease can be taken by any other holder.
    """

    def __init__(self, processor_name: str, organization_id: UUID, holder_id: str, ttl: float):
        self.processor_name = processor_name
        self.organization_id = organization_id
        self.holder_id = holder_id
        self.ttl = ttl

    def _rows(self):
        return ProcessorLease.filter(processor_name=self.processor_name, organization_id=self.organization_id)

    async def acquire(self) -> bool:
        """Takes or refreshes the lease. Returns False when another live holder owns it."""
        now = timezone.now()
        expires_at = now + timedelta(seconds=self.ttl)

        # Refresh keeps the original acquired_at
        refreshed = await self._rows().filter(holder_id=self.holder_id).update(
            expires_at=expires_at, updated_at=now
        )
        if refreshed:
            return True

        taken = await self._rows().filter(
            Q(holder_id__isnull=True) | Q(expires_at__lte=now)
        ).update(holder_id=self.holder_id, expires_at=expires_at, acquired_at=now, updated_at=now)
        if taken:
            return True

        try:
            await ProcessorLease.create(
                processor_name=self.processor_name,
                organization_id=self.organization_id,
                holder_id=self.holder_id,
                expires_at=expires_at,
                acquired_at=now,
            )
        except IntegrityError:
            # Row exists and belongs to a live holder
            return False
        return True

    async def renew(self):
        """Heartbeat. Raises LeaseLost if another holder took the partition over."""
        now = timezone.now()
        renewed = await self._rows().filter(holder_id=self.holder_id).update(
            expires_at=now + timedelta(seconds=self.ttl), updated_at=now
        )
        if not renewed:
            raise LeaseLost(self.processor_name, self.organization_id, self.holder_id)

    async def fence(self, conn: Any = None):
        """
        Asserts live ownership inside the caller's transaction, so a commit by a
        holder whose lease expired mid-delivery is rolled back.
        """
        now = timezone.now()
        held = await self._rows().filter(
            holder_id=self.holder_id, expires_at__gt=now
        ).using_db(conn).update(updated_at=now)
        if not held:
            raise LeaseLost(self.processor_name, self.organization_id, self.holder_id)

    async def release(self):
        now = timezone.now()
        released = await self._rows().filter(holder_id=self.holder_id).update(
            holder_id=None, expires_at=now, updated_at=now
        )
        if released:
            logger.debug("Released lease %s/%s", self.processor_name, self.organization_id)
