"""Error taxonomy for the outbox relay.

Producers see ``EventValidationError`` synchronously from ``append``. The
processor absorbs ``DeliveryFailure`` through retries, quarantines poison
pills in the dead letter queue and treats ``OrderingViolation`` as fatal for
the worker that hit it.
"""
from uuid import UUID


class OutboxError(Exception):
    """Base class for all outbox errors."""
    code = "outbox_error"


# ----------- Append-time validation -----------

class EventValidationError(OutboxError):
    """An event was rejected before anything was written."""
    code = "validation_error"


class PayloadTooLarge(EventValidationError):
    code = "payload_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"event_data is {size} bytes, limit is {limit} bytes")


class InvalidEventType(EventValidationError):
    code = "invalid_event_type"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unsupported event_type: {value!r}")


class InvalidEntityType(EventValidationError):
    code = "invalid_entity_type"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unsupported entity_type: {value!r}")


class InvalidEventData(EventValidationError):
    code = "invalid_event_data"


# ----------- Delivery -----------

class DeliveryFailure(OutboxError):
    """Transient sink error. Recorded on the event and retried."""
    code = "delivery_failure"


class PoisonPill(OutboxError):
    """An event exhausted its retry budget."""
    code = "poison_pill"

    def __init__(self, event_id: UUID, attempts: int, last_error: str):
        self.event_id = event_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Event {event_id} failed {attempts} times: {last_error}")


class AlreadyDeadLettered(OutboxError):
    code = "already_dead_lettered"

    def __init__(self, event_id: UUID):
        self.event_id = event_id
        super().__init__(f"Event {event_id} is already in the dead letter queue")


class DeadLetterNotFound(OutboxError):
    code = "dead_letter_not_found"

    def __init__(self, dlq_id: UUID):
        self.dlq_id = dlq_id
        super().__init__(f"Dead letter entry {dlq_id} not found")


# ----------- Ordering and exclusion -----------

class OrderingViolation(OutboxError):
    """The single-writer-per-tenant invariant was broken."""
    code = "ordering_violation"


class StaleAdvance(OrderingViolation):
    code = "stale_advance"

    def __init__(self, processor_name: str, organization_id: UUID, event_id: UUID, current_event_id: UUID):
        self.processor_name = processor_name
        self.organization_id = organization_id
        self.event_id = event_id
        self.current_event_id = current_event_id
        super().__init__(
            f"Cursor {processor_name}/{organization_id} is at {current_event_id}; "
            f"refusing to move back to {event_id}"
        )


class LeaseLost(OutboxError):
    """Another worker took over the partition while this one was running."""
    code = "lease_lost"

    def __init__(self, processor_name: str, organization_id: UUID, holder_id: str):
        self.processor_name = processor_name
        self.organization_id = organization_id
        self.holder_id = holder_id
        super().__init__(f"Lease {processor_name}/{organization_id} no longer held by {holder_id}")
