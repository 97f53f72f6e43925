from tortoise import fields, models


class OutboxCursor(models.Model):
    """
    Durable watermark of the last event a processor resolved for one tenant.
    Logically keyed by (processor_name, organization_id).
    """
    id = fields.IntField(primary_key=True)
    processor_name = fields.CharField(max_length=128)
    organization_id = fields.UUIDField()
    last_processed_event_id = fields.UUIDField()
    last_processed_at = fields.DatetimeField()
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "outbox_cursor"
        unique_together = (("processor_name", "organization_id"),)


class ProcessorLease(models.Model):
    """
    Time-bounded claim on a (processor_name, organization_id) partition.
    At most one holder may deliver a tenant's events at a time.
    """
    id = fields.IntField(primary_key=True)
    processor_name = fields.CharField(max_length=128)
    organization_id = fields.UUIDField()
    holder_id = fields.CharField(max_length=128, null=True)  # NULL = released
    expires_at = fields.DatetimeField()
    acquired_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "outbox_lease"
        unique_together = (("processor_name", "organization_id"),)
