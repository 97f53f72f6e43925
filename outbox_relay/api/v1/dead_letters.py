import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from outbox_relay.core.exceptions import OutboxError
from outbox_relay.schemas.outbox import DeadLetterPage, DeadLetterResponse, ReplayResponse
from outbox_relay.schemas.response import SuccessResponse
from outbox_relay.services.dead_letter_store import get_dead_letter, list_dead_letters, replay_dead_letter

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=SuccessResponse)
async def list_dead_letters_endpoint(
    organization_id: Optional[UUID] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """Lists dead-lettered events, newest first."""
    try:
        entries, total = await list_dead_letters(organization_id=organization_id, limit=limit, offset=offset)
    except Exception as e:
        log.error(f"Error listing dead letters: {e}")
        raise HTTPException(status_code=500, detail="Server failed to list dead letters.")

    page = DeadLetterPage(
        items=[DeadLetterResponse.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )
    return SuccessResponse(data=page.model_dump(mode="json"))


@router.get("/{dlq_id}", response_model=SuccessResponse)
async def get_dead_letter_endpoint(dlq_id: UUID):
    """Fetches one dead letter entry, including its last error."""
    # DeadLetterNotFound is mapped to 404 by the outbox exception handler
    entry = await get_dead_letter(dlq_id)
    return SuccessResponse(data=DeadLetterResponse.model_validate(entry).model_dump(mode="json"))


@router.post("/{dlq_id}/replay", status_code=status.HTTP_202_ACCEPTED, response_model=SuccessResponse)
async def replay_dead_letter_endpoint(dlq_id: UUID):
    """
    Re-enqueues a dead-lettered event as a new outbox event.
    The dead letter entry itself is left unchanged.
    """
    try:
        event = await replay_dead_letter(dlq_id)
    except OutboxError:
        raise
    except Exception as e:
        log.error(f"Error replaying dead letter {dlq_id}: {e}")
        raise HTTPException(status_code=500, detail="Server failed to replay the dead letter.")

    log.info(f"Dead letter {dlq_id} replayed as event {event.event_id}.")
    data = ReplayResponse(
        dlq_id=dlq_id,
        event_id=event.event_id,
        organization_id=event.organization_id,
        created_at=event.created_at,
        message="Event re-enqueued for delivery.",
    ).model_dump(mode="json")
    return SuccessResponse(data=data)
