import logging
from typing import Any, List, Optional
from uuid import UUID

from tortoise import timezone

from outbox_relay.core.exceptions import StaleAdvance
from outbox_relay.models.cursor import OutboxCursor
from outbox_relay.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)


async def get_cursor_row(processor_name: str, organization_id: UUID, conn: Any = None) -> Optional[OutboxCursor]:
    return await OutboxCursor.get_or_none(
        processor_name=processor_name, organization_id=organization_id
    ).using_db(conn)


async def get_cursor(processor_name: str, organization_id: UUID) -> Optional[UUID]:
    """Last processed event id for the pair, or None before the first advance."""
    cursor = await get_cursor_row(processor_name, organization_id)
    return cursor.last_processed_event_id if cursor else None


async def list_cursors(processor_name: Optional[str] = None) -> List[OutboxCursor]:
    query = OutboxCursor.all()
    if processor_name:
        query = query.filter(processor_name=processor_name)
    return await query.order_by("processor_name", "organization_id")


async def advance_cursor(
    processor_name: str,
    organization_id: UUID,
    event_id: UUID,
    timestamp=None,
    conn: Any = None,
) -> OutboxCursor:
    """
    Moves the (processor, tenant) watermark to `event_id`.

    Raises StaleAdvance if the target sorts before the current cursor event.
    Call inside the transaction that marks the event delivered.
    """
    timestamp = timestamp or timezone.now()
    cursor = await get_cursor_row(processor_name, organization_id, conn=conn)

    if cursor is None:
        cursor = await OutboxCursor.create(
            processor_name=processor_name,
            organization_id=organization_id,
            last_processed_event_id=event_id,
            last_processed_at=timestamp,
            using_db=conn,
        )
        logger.info("Created cursor %s/%s at %s", processor_name, organization_id, event_id)
        return cursor

    if cursor.last_processed_event_id == event_id:
        return cursor

    target = await OutboxEvent.get_or_none(event_id=event_id).using_db(conn)
    current = await OutboxEvent.get_or_none(event_id=cursor.last_processed_event_id).using_db(conn)
    # Without both positions there is nothing to compare against
    if target is not None and current is not None and target.position < current.position:
        raise StaleAdvance(processor_name, organization_id, event_id, cursor.last_processed_event_id)

    cursor.last_processed_event_id = event_id
    cursor.last_processed_at = timestamp
    await cursor.save(using_db=conn, update_fields=["last_processed_event_id", "last_processed_at", "updated_at"])
    return cursor
