import logging
from datetime import timedelta
from typing import Any, List, Optional
from uuid import UUID

from tortoise import timezone
from tortoise.expressions import Q

from outbox_relay.core.config import BATCH_SIZE, MAX_ERROR_LENGTH, PRUNE_BATCH_SIZE, PRUNE_RETENTION_HOURS
from outbox_relay.models.cursor import OutboxCursor
from outbox_relay.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)


def after_position(anchor: OutboxEvent) -> Q:
    """Filter matching events that sort strictly after `anchor` in (created_at, event_id) order."""
    return Q(created_at__gt=anchor.created_at) | Q(created_at=anchor.created_at, event_id__gt=anchor.event_id)


async def get_event(event_id: UUID, conn: Any = None) -> Optional[OutboxEvent]:
    return await OutboxEvent.get_or_none(event_id=event_id).using_db(conn)


async def scan_pending(
    organization_id: UUID,
    after_event_id: Optional[UUID] = None,
    limit: int = BATCH_SIZE,
) -> List[OutboxEvent]:
    """
    Returns up to `limit` undelivered events of one tenant, ordered by
    (created_at, event_id), starting strictly after `after_event_id`.
    """
    query = OutboxEvent.filter(organization_id=organization_id, delivered_at__isnull=True)

    if after_event_id is not None:
        anchor = await OutboxEvent.get_or_none(event_id=after_event_id, organization_id=organization_id)
        if anchor is None:
            # Anchor was removed out of band; everything still pending is safe to scan
            logger.warning(
                "Cursor anchor %s missing for organization %s, scanning from oldest pending event",
                after_event_id, organization_id,
            )
        else:
            query = query.filter(after_position(anchor))

    return await query.order_by("created_at", "event_id").limit(limit)


async def pending_organizations() -> List[UUID]:
    """Tenants that currently have at least one undelivered event."""
    org_ids = await OutboxEvent.filter(delivered_at__isnull=True).distinct().values_list("organization_id", flat=True)
    return sorted({UUID(str(org_id)) for org_id in org_ids}, key=str)


async def mark_delivered(event: OutboxEvent, conn: Any = None, delivered_at=None) -> bool:
    """Sets delivered_at if the event is still pending. Returns False if it was already delivered."""
    delivered_at = delivered_at or timezone.now()
    updated = await OutboxEvent.filter(
        event_id=event.event_id, delivered_at__isnull=True
    ).using_db(conn).update(delivered_at=delivered_at)
    if updated:
        event.delivered_at = delivered_at
    return bool(updated)


async def record_failure(event: OutboxEvent, error: str) -> OutboxEvent:
    """Increments the attempt counter and stores the latest failure reason."""
    event.delivery_attempts += 1
    event.last_error = (error or "Unknown error")[:MAX_ERROR_LENGTH]
    await event.save(update_fields=["delivery_attempts", "last_error"])
    return event


async def discard(event: OutboxEvent, conn: Any = None) -> int:
    """Removes an event row. Only used for events already copied to the dead letter queue."""
    return await OutboxEvent.filter(event_id=event.event_id).using_db(conn).delete()


async def prune_delivered_events(
    retention_hours: int = PRUNE_RETENTION_HOURS,
    max_batch_size: int = PRUNE_BATCH_SIZE,
):
    """
    Deletes delivered events older than the retention window, oldest first.

    Events a cursor is anchored on are kept so scans can keep resolving their
    position. Returns (deleted_count, oldest_delivered_age_hours) where the age
    refers to the oldest delivered event still present.
    """
    now = timezone.now()
    cutoff = now - timedelta(hours=retention_hours)

    query = OutboxEvent.filter(delivered_at__isnull=False, delivered_at__lt=cutoff)
    anchored = await OutboxCursor.all().values_list("last_processed_event_id", flat=True)
    if anchored:
        query = query.exclude(event_id__in=list(anchored))

    event_ids = await query.order_by("delivered_at").limit(max_batch_size).values_list("event_id", flat=True)
    deleted = 0
    if event_ids:
        deleted = await OutboxEvent.filter(event_id__in=list(event_ids)).delete()

    oldest = await OutboxEvent.filter(delivered_at__isnull=False).order_by("delivered_at").first()
    oldest_age_hours = 0.0
    if oldest is not None:
        oldest_age_hours = round((now - oldest.delivered_at).total_seconds() / 3600, 2)

    logger.info("Pruned %s delivered events older than %sh", deleted, retention_hours)
    return deleted, oldest_age_hours
