import uuid
from datetime import timedelta

from django.db import models
from django.utils import timezone


class WebhookLog(models.Model):
    """One inbound payment notification and what became of it.

    ``transaction_id`` is the idempotency key; the unique constraint lets
    concurrent duplicate deliveries resolve to a single row.
    """

    STATUS_PENDING = "pending"
    STATUS_PROCESSING = "processing"
    STATUS_COMPLETED = "completed"
    STATUS_FAILED = "failed"
    STATUS_CHOICES = [
        (STATUS_PENDING, "Pending"),
        (STATUS_PROCESSING, "Processing"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_FAILED, "Failed"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey("store.Order", related_name="webhook_logs", on_delete=models.PROTECT)
    transaction_id = models.CharField(max_length=255, unique=True)
    payment_status = models.CharField(max_length=20)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING)
    retry_count = models.PositiveIntegerField(default=0)
    next_retry_at = models.DateTimeField(null=True, blank=True, db_index=True)
    raw_payload = models.TextField(blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.transaction_id} ({self.status}) @ {self.created_at:%Y-%m-%d %H:%M:%S}"

    def mark_completed(self, now):
        self.status = self.STATUS_COMPLETED
        self.processed_at = now

    def mark_failed(self, now, retry_delay: timedelta):
        self.status = self.STATUS_FAILED
        self.retry_count += 1
        self.next_retry_at = now + retry_delay

    def is_due_for_retry(self, now, max_retries: int) -> bool:
        return (
            self.status == self.STATUS_FAILED
            and self.retry_count < max_retries
            and self.next_retry_at is not None
            and self.next_retry_at <= now
        )
