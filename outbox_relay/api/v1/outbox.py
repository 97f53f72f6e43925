import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status

from outbox_relay.schemas.outbox import (
    CursorHealthResponse,
    OutboxMetricsResponse,
    PruneRequest,
    PruneResponse,
)
from outbox_relay.schemas.response import SuccessResponse
from outbox_relay.services.event_store import prune_delivered_events
from outbox_relay.services.monitoring import cursor_health, outbox_health_metrics

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/metrics", response_model=SuccessResponse)
async def get_outbox_metrics():
    """Outbox-wide health counters (backlog, oldest pending age, DLQ growth)."""
    try:
        metrics = await outbox_health_metrics()
        return SuccessResponse(data=OutboxMetricsResponse(**metrics).model_dump())
    except Exception as e:
        log.error(f"Error computing outbox metrics: {e}")
        raise HTTPException(status_code=500, detail="Server failed to compute outbox metrics.")


@router.get("/cursors", response_model=SuccessResponse)
async def get_cursor_health(processor_name: Optional[str] = None):
    """Lag and pending backlog for each processor cursor."""
    try:
        rows = await cursor_health(processor_name)
        data = [CursorHealthResponse(**row).model_dump(mode="json") for row in rows]
        return SuccessResponse(data=data)
    except Exception as e:
        log.error(f"Error computing cursor health: {e}")
        raise HTTPException(status_code=500, detail="Server failed to compute cursor health.")


@router.post("/prune", status_code=status.HTTP_200_OK, response_model=SuccessResponse)
async def prune_outbox(request_data: Optional[PruneRequest] = None):
    """Deletes delivered events past the retention window."""
    request_data = request_data or PruneRequest()
    try:
        deleted, oldest_age = await prune_delivered_events(
            retention_hours=request_data.retention_hours,
            max_batch_size=request_data.max_batch_size,
        )
    except Exception as e:
        log.error(f"Error pruning outbox: {e}")
        raise HTTPException(status_code=500, detail="Server failed to prune the outbox.")

    log.info(f"Pruned {deleted} delivered events (retention {request_data.retention_hours}h).")
    data = PruneResponse(deleted_count=deleted, oldest_delivered_event_age_hours=oldest_age).model_dump()
    return SuccessResponse(data=data)
