import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from outbox_relay.core.config import (
    DELIVERY_TIMEOUT_SECONDS,
    REALTIME_API_KEY,
    REALTIME_EVENT_NAME,
    REALTIME_URL,
)
from outbox_relay.core.exceptions import DeliveryFailure
from outbox_relay.models.outbox import EntityType, OutboxEvent

logger = logging.getLogger(__name__)


class DeliverySink(Protocol):
    """The real-time channel the processor pushes events to."""

    async def deliver(self, event: OutboxEvent) -> bool:
        ...


def channel_name(organization_id) -> str:
    return f"notifications:{organization_id}"


def build_notification_payload(event: OutboxEvent) -> Dict[str, Any]:
    """
    Identifier-only view of an event. event_data is never forwarded, so
    subscribers must re-fetch the entity to see its current state.
    """
    return {
        "id": str(event.event_id),
        "event_type": event.event_type.value,
        "entity_type": event.entity_type.value,
        "entity_id": str(event.entity_id),
        "job_id": str(event.entity_id) if event.entity_type == EntityType.CATALOGING_JOB else None,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


class LoggingSink:
    """Logs each notification. Used when no realtime endpoint is configured."""

    async def deliver(self, event: OutboxEvent) -> bool:
        logger.info(
            "NOTIFY %s %s",
            channel_name(event.organization_id),
            build_notification_payload(event),
        )
        return True


class RealtimeBroadcastSink:
    """
    Publishes notifications through the Supabase Realtime broadcast REST API,
    one channel per organization.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
    ):
        self.endpoint = f"{base_url.rstrip('/')}/realtime/v1/api/broadcast"
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def deliver(self, event: OutboxEvent) -> bool:
        body = {
            "messages": [
                {
                    "topic": channel_name(event.organization_id),
                    "event": REALTIME_EVENT_NAME,
                    "payload": build_notification_payload(event),
                }
            ]
        }
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(self.endpoint, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"Broadcast transport error: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryFailure(f"Broadcast returned {response.status_code}: {response.text[:200]}")
        return True

    async def aclose(self):
        await self._client.aclose()


def build_sink() -> DeliverySink:
    """Realtime sink when REALTIME_URL is configured, logging sink otherwise."""
    if REALTIME_URL:
        return RealtimeBroadcastSink(REALTIME_URL, REALTIME_API_KEY)
    logger.warning("REALTIME_URL not set; notifications will only be logged")
    return LoggingSink()
