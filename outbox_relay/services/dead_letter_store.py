import logging
from typing import List, Optional, Tuple
from uuid import UUID

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from outbox_relay.core.exceptions import AlreadyDeadLettered, DeadLetterNotFound
from outbox_relay.events.outbox_utility import create_outbox_event
from outbox_relay.models.dead_letter import DeadLetterEvent
from outbox_relay.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)

DEFAULT_DLQ_ERROR = "Max delivery attempts exceeded"


async def dead_letter(event: OutboxEvent, error: Optional[str] = None) -> DeadLetterEvent:
    """
    Moves an event into the dead letter queue.

    The DLQ insert and the outbox delete commit together, so the event is never
    in both stores or in neither. Raises AlreadyDeadLettered on a second attempt.
    """
    last_error = error or event.last_error or DEFAULT_DLQ_ERROR

    async with in_transaction() as conn:
        if await DeadLetterEvent.filter(original_event_id=event.event_id).using_db(conn).exists():
            raise AlreadyDeadLettered(event.event_id)
        try:
            entry = await DeadLetterEvent.create(
                original_event_id=event.event_id,
                organization_id=event.organization_id,
                event_type=event.event_type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                event_data=event.event_data,
                delivery_attempts=event.delivery_attempts,
                last_error=last_error,
                using_db=conn,
            )
        except IntegrityError as exc:
            raise AlreadyDeadLettered(event.event_id) from exc

        await OutboxEvent.filter(event_id=event.event_id).using_db(conn).delete()

    return entry


async def get_dead_letter(dlq_id: UUID) -> DeadLetterEvent:
    entry = await DeadLetterEvent.get_or_none(dlq_id=dlq_id)
    if entry is None:
        raise DeadLetterNotFound(dlq_id)
    return entry


async def list_dead_letters(
    organization_id: Optional[UUID] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[DeadLetterEvent], int]:
    """Newest entries first, with the total count for pagination."""
    query = DeadLetterEvent.all()
    if organization_id is not None:
        query = query.filter(organization_id=organization_id)
    total = await query.count()
    entries = await query.order_by("-failed_at").offset(offset).limit(limit)
    return entries, total


async def replay_dead_letter(dlq_id: UUID) -> OutboxEvent:
    """
    Re-enqueues a dead-lettered event as a brand new outbox event.

    The DLQ row stays untouched; the new event gets a fresh event_id and a
    clean attempt counter, and is ordered after everything already pending.
    """
    entry = await get_dead_letter(dlq_id)
    event = await create_outbox_event(
        organization_id=entry.organization_id,
        event_type=entry.event_type,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        event_data=entry.event_data,
    )
    logger.info(
        "Replayed dead letter %s (original event %s) as event %s",
        entry.dlq_id, entry.original_event_id, event.event_id,
    )
    return event
