import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from outbox_relay.core.config import PRUNE_BATCH_SIZE, PRUNE_RETENTION_HOURS
from outbox_relay.models.outbox import EntityType, EventType


class OutboxMetricsResponse(BaseModel):
    """Outbox-wide counters used for alerting."""
    undelivered_events: int
    oldest_undelivered_age_seconds: int
    retry_events: int
    events_last_hour: int
    dlq_total_events: int
    dlq_events_last_hour: int


class CursorHealthResponse(BaseModel):
    processor_name: str
    organization_id: uuid.UUID
    last_processed_event_id: uuid.UUID
    last_processed_at: datetime
    cursor_lag_seconds: float
    pending_events: int


class PruneRequest(BaseModel):
    retention_hours: int = Field(PRUNE_RETENTION_HOURS, ge=0, description="Keep delivered events younger than this.")
    max_batch_size: int = Field(PRUNE_BATCH_SIZE, gt=0, le=50000, description="Upper bound on rows deleted per call.")


class PruneResponse(BaseModel):
    deleted_count: int
    oldest_delivered_event_age_hours: float


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dlq_id: uuid.UUID
    original_event_id: uuid.UUID
    organization_id: uuid.UUID
    event_type: EventType
    entity_type: EntityType
    entity_id: uuid.UUID
    event_data: Dict[str, Any]
    delivery_attempts: int
    last_error: str
    failed_at: datetime


class DeadLetterPage(BaseModel):
    items: List[DeadLetterResponse]
    total: int
    limit: int
    offset: int


class ReplayResponse(BaseModel):
    """The fresh outbox event created from a dead letter entry."""
    dlq_id: uuid.UUID
    event_id: uuid.UUID
    organization_id: uuid.UUID
    created_at: Optional[datetime] = None
    message: str
