from enum import Enum
from tortoise import fields, models
import uuid


class EventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class EntityType(str, Enum):
    CATALOGING_JOB = "cataloging_job"
    FLAG = "flag"


class OutboxEvent(models.Model):
    """
    The Outbox table stores events atomically with the business transaction.
    Rows are only mutated by the processor (attempts, delivered_at, last_error).
    """
    event_id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    organization_id = fields.UUIDField()  # Tenant partition key
    event_type = fields.CharEnumField(EventType, max_length=16)
    entity_type = fields.CharEnumField(EntityType, max_length=32)
    entity_id = fields.UUIDField()
    event_data = fields.JSONField(default=dict)  # Identifiers only, <= 1024 bytes serialized
    created_at = fields.DatetimeField(auto_now_add=True)
    delivered_at = fields.DatetimeField(null=True)  # NULL = pending delivery
    delivery_attempts = fields.IntField(default=0)
    last_error = fields.TextField(null=True)

    class Meta:
        table = "outbox"
        indexes = [
            ("organization_id", "delivered_at"),          # Pending scans per tenant
            ("organization_id", "created_at", "event_id"),  # Ordered pagination
            ("delivered_at",),                              # Pruning
        ]

    @property
    def position(self):
        """Sort key that defines the per-tenant delivery order."""
        return (self.created_at, str(self.event_id))

    def __str__(self):
        return f"{self.entity_type.value}.{self.event_type.value}:{self.event_id}"
