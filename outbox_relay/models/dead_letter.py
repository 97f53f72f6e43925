from tortoise import fields, models
import uuid

from outbox_relay.models.outbox import EntityType, EventType


class DeadLetterEvent(models.Model):
    """
    Terminal store for events that exhausted their delivery attempts.
    Written once by the processor and never updated; replay appends a new outbox event.
    """
    dlq_id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    original_event_id = fields.UUIDField(unique=True)  # An event is dead-lettered at most once
    organization_id = fields.UUIDField()
    event_type = fields.CharEnumField(EventType, max_length=16)
    entity_type = fields.CharEnumField(EntityType, max_length=32)
    entity_id = fields.UUIDField()
    event_data = fields.JSONField(default=dict)
    delivery_attempts = fields.IntField()
    last_error = fields.TextField()
    failed_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "outbox_dlq"
        indexes = [
            ("organization_id", "failed_at"),
        ]
