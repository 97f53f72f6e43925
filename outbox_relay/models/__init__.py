# outbox_relay/models/__init__.py
from .outbox import EntityType, EventType, OutboxEvent
from .dead_letter import DeadLetterEvent
from .cursor import OutboxCursor, ProcessorLease

# Export all models
__all__ = [
    "DeadLetterEvent",
    "EntityType",
    "EventType",
    "OutboxCursor",
    "OutboxEvent",
    "ProcessorLease",
]
