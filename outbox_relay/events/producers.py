"""
Helpers that domain-mutation code calls inside its own transaction to record
cataloging job and flag changes in the outbox.

Payloads carry identifiers and status fields only. Updates that leave every
tracked field untouched emit nothing.
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from outbox_relay.events.outbox_utility import create_outbox_event
from outbox_relay.models.outbox import EntityType, EventType, OutboxEvent

OPERATION_EVENT_TYPES = {
    "INSERT": EventType.CREATED,
    "UPDATE": EventType.UPDATED,
    "DELETE": EventType.DELETED,
}

JOB_TRACKED_FIELDS = ("status", "completed_at", "finalized_at")
JOB_PAYLOAD_FIELDS = ("status", "source_type", "updated_at", "completed_at", "finalized_at")

FLAG_TRACKED_FIELDS = ("status", "resolved_at")
FLAG_PAYLOAD_FIELDS = ("status", "type", "resolved_at")


def _json_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


def _event_type_for(operation: str) -> EventType:
    try:
        return OPERATION_EVENT_TYPES[operation.upper()]
    except KeyError:
        raise ValueError(f"Unsupported operation: {operation}") from None


def has_tracked_change(old: Optional[Dict], new: Optional[Dict], tracked: Iterable[str]) -> bool:
    """True when any tracked field differs between the two snapshots."""
    old = old or {}
    new = new or {}
    return any(old.get(field) != new.get(field) for field in tracked)


def _build_payload(id_key: str, entity_id: UUID, old: Optional[Dict], new: Optional[Dict], fields) -> Dict:
    # Prefer the new snapshot and fall back to the old one for deletes
    payload = {id_key: str(entity_id)}
    for field in fields:
        value = (new or {}).get(field)
        if value is None:
            value = (old or {}).get(field)
        payload[field] = _json_value(value)
    return payload


async def _record_change(
    organization_id: UUID,
    operation: str,
    entity_type: EntityType,
    entity_id: UUID,
    id_key: str,
    old: Optional[Dict],
    new: Optional[Dict],
    tracked,
    payload_fields,
    conn: Any,
) -> Optional[OutboxEvent]:
    event_type = _event_type_for(operation)
    if event_type == EventType.UPDATED and not has_tracked_change(old, new, tracked):
        return None

    return await create_outbox_event(
        organization_id=organization_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        event_data=_build_payload(id_key, entity_id, old, new, payload_fields),
        conn=conn,
    )


async def record_cataloging_job_change(
    organization_id: UUID,
    operation: str,
    job_id: UUID,
    old: Optional[Dict] = None,
    new: Optional[Dict] = None,
    conn: Any = None,
) -> Optional[OutboxEvent]:
    """Records a cataloging job INSERT/UPDATE/DELETE. Must share the job write's transaction."""
    return await _record_change(
        organization_id, operation, EntityType.CATALOGING_JOB, job_id, "job_id",
        old, new, JOB_TRACKED_FIELDS, JOB_PAYLOAD_FIELDS, conn,
    )


async def record_flag_change(
    organization_id: UUID,
    operation: str,
    flag_id: UUID,
    old: Optional[Dict] = None,
    new: Optional[Dict] = None,
    conn: Any = None,
) -> Optional[OutboxEvent]:
    """Records a data quality flag INSERT/UPDATE/DELETE. Must share the flag write's transaction."""
    return await _record_change(
        organization_id, operation, EntityType.FLAG, flag_id, "flag_id",
        old, new, FLAG_TRACKED_FIELDS, FLAG_PAYLOAD_FIELDS, conn,
    )
