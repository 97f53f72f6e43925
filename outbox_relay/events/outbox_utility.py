import json
import logging
from typing import Dict, Any, Optional, Union
from uuid import UUID

from outbox_relay.core.config import MAX_EVENT_DATA_BYTES
from outbox_relay.core.exceptions import (
    InvalidEntityType,
    InvalidEventData,
    InvalidEventType,
    PayloadTooLarge,
)
from outbox_relay.models.outbox import EntityType, EventType, OutboxEvent

logger = logging.getLogger(__name__)


def payload_size(event_data: Dict[str, Any]) -> int:
    """Size in bytes of the compact UTF-8 JSON encoding of a payload."""
    try:
        encoded = json.dumps(event_data, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidEventData(f"event_data is not JSON serializable: {exc}") from exc
    return len(encoded.encode("utf-8"))


def _coerce_event_type(value: Union[str, EventType]) -> EventType:
    try:
        return EventType(value)
    except ValueError:
        raise InvalidEventType(value) from None


def _coerce_entity_type(value: Union[str, EntityType]) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise InvalidEntityType(value) from None


def validate_event(
    event_type: Union[str, EventType],
    entity_type: Union[str, EntityType],
    event_data: Optional[Dict[str, Any]],
):
    """Checks an event against the outbox contract without touching the database."""
    event_type = _coerce_event_type(event_type)
    entity_type = _coerce_entity_type(entity_type)
    if event_data is None:
        event_data = {}
    if not isinstance(event_data, dict):
        raise InvalidEventData("event_data must be a JSON object")

    size = payload_size(event_data)
    if size > MAX_EVENT_DATA_BYTES:
        # Never truncate: consumers re-fetch authoritative state by identifier
        raise PayloadTooLarge(size, MAX_EVENT_DATA_BYTES)
    return event_type, entity_type, event_data


async def create_outbox_event(
    organization_id: UUID,
    event_type: Union[str, EventType],
    entity_type: Union[str, EntityType],
    entity_id: UUID,
    event_data: Optional[Dict[str, Any]] = None,
    conn: Any = None
) -> OutboxEvent:
    """
    Creates a new Outbox event record using the provided database connection (transaction).

    CRITICAL: Passing 'conn' ensures the event is created atomically with the business data.
    Validation runs first, so a rejected event fails the caller's transaction with nothing written.
    """
    event_type, entity_type, event_data = validate_event(event_type, entity_type, event_data)

    event = await OutboxEvent.create(
        organization_id=organization_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        event_data=event_data,
        delivery_attempts=0,
        using_db=conn
    )
    logger.debug("Appended outbox event %s for organization %s", event, organization_id)
    return event


# Producer-facing name for the Event Store append operation
append = create_outbox_event
