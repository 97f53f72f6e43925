from datetime import timedelta
from typing import Dict, List, Optional

from tortoise import timezone

from outbox_relay.models.dead_letter import DeadLetterEvent
from outbox_relay.models.outbox import OutboxEvent
from outbox_relay.services.cursor_store import list_cursors


async def outbox_health_metrics() -> Dict[str, float]:
    """Point-in-time counters for alerting on a stuck or failing outbox."""
    now = timezone.now()
    hour_ago = now - timedelta(hours=1)

    pending = OutboxEvent.filter(delivered_at__isnull=True)
    oldest = await pending.order_by("created_at").first()

    return {
        "undelivered_events": await pending.count(),
        "oldest_undelivered_age_seconds": int((now - oldest.created_at).total_seconds()) if oldest else 0,
        "retry_events": await OutboxEvent.filter(delivered_at__isnull=True, delivery_attempts__gt=0).count(),
        "events_last_hour": await OutboxEvent.filter(created_at__gt=hour_ago).count(),
        "dlq_total_events": await DeadLetterEvent.all().count(),
        "dlq_events_last_hour": await DeadLetterEvent.filter(failed_at__gt=hour_ago).count(),
    }


async def cursor_health(processor_name: Optional[str] = None) -> List[Dict]:
    """Per cursor lag, plus the tenant's pending backlog. Most lagging first."""
    now = timezone.now()
    rows = []
    for cursor in await list_cursors(processor_name):
        backlog = await OutboxEvent.filter(
            organization_id=cursor.organization_id, delivered_at__isnull=True
        ).count()
        rows.append({
            "processor_name": cursor.processor_name,
            "organization_id": cursor.organization_id,
            "last_processed_event_id": cursor.last_processed_event_id,
            "last_processed_at": cursor.last_processed_at,
            "cursor_lag_seconds": round((now - cursor.last_processed_at).total_seconds(), 3),
            "pending_events": backlog,
        })
    rows.sort(key=lambda row: row["cursor_lag_seconds"], reverse=True)
    return rows
