"""Workflow trigger definitions, audit logs and webhook delivery state."""

import hashlib
import hmac
from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone

from billing.workflow.events import EventType


class WorkflowTrigger(models.Model):
    """Admin-defined rule: when ``event_type`` fires and all conditions hold, run the actions."""

    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    event_type = models.CharField(max_length=50, choices=EventType.choices, db_index=True)
    conditions = models.JSONField(default=list, blank=True)  # [{field, operator, value}, ...]
    actions = models.JSONField(default=list)  # [{type, config}, ...]
    priority = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["event_type", "-priority", "name"]
        indexes = [models.Index(fields=["event_type", "is_active"], name="trigger_event_active_idx")]

    def __str__(self) -> str:
        return f"{self.name} ({self.event_type})"

    @property
    def action_types(self):
        return [action.get("type") for action in self.actions]


class WorkflowEventLog(models.Model):
    """Append-only record of every emitted event."""

    event_type = models.CharField(max_length=50, choices=EventType.choices, db_index=True)
    entity_type = models.CharField(max_length=50, blank=True)
    entity_id = models.CharField(max_length=64, blank=True)
    payload = models.JSONField(default=dict)
    triggered_by = models.CharField(max_length=255, default="system")
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = "workflow_event_log"
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.event_type} #{self.entity_id}"


class WorkflowTriggerLog(models.Model):
    class Result(models.TextChoices):
        SUCCESS = "success", "Success"
        SKIPPED = "skipped", "Skipped"
        FAILED = "failed", "Failed"

    trigger = models.ForeignKey(WorkflowTrigger, on_delete=models.CASCADE, related_name="logs")
    event_log = models.ForeignKey(WorkflowEventLog, on_delete=models.CASCADE, related_name="trigger_logs", null=True, blank=True)
    event_type = models.CharField(max_length=50)
    action_index = models.IntegerField(null=True, blank=True)
    action_type = models.CharField(max_length=50, blank=True)
    result = models.CharField(max_length=20, choices=Result.choices)
    detail = models.JSONField(default=dict, blank=True)
    error_message = models.TextField(blank=True)
    execution_time_ms = models.IntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [models.Index(fields=["trigger", "-created_at"], name="trigger_log_recent_idx")]


class WorkflowDedupeKey(models.Model):
    """Claimed once per (trigger, event type, source entity) for financial actions."""

    trigger = models.ForeignKey(WorkflowTrigger, on_delete=models.CASCADE, related_name="dedupe_keys")
    event_type = models.CharField(max_length=50)
    source_entity_id = models.CharField(max_length=64)
    event_log = models.ForeignKey(WorkflowEventLog, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["trigger", "event_type", "source_entity_id"],
                name="unique_workflow_dedupe_key",
            ),
        ]


class WebhookDelivery(models.Model):
    """Outbound webhook delivery with persisted retry state."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        DELIVERED = "delivered", "Delivered"
        FAILED = "failed", "Failed"  # last attempt failed, retry scheduled
        EXHAUSTED = "exhausted", "Exhausted"

    trigger = models.ForeignKey(WorkflowTrigger, on_delete=models.SET_NULL, null=True, blank=True, related_name="deliveries")
    event_log = models.ForeignKey(WorkflowEventLog, on_delete=models.SET_NULL, null=True, blank=True, related_name="deliveries")
    url = models.URLField(max_length=1000)
    method = models.CharField(max_length=10, default="POST")
    headers = models.JSONField(default=dict, blank=True)
    body = models.TextField()  # raw JSON, exactly what gets signed and sent
    secret = models.CharField(max_length=255, blank=True)
    signature = models.CharField(max_length=128, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    attempts = models.IntegerField(default=0)
    max_attempts = models.IntegerField(default=5)
    next_retry_at = models.DateTimeField(null=True, blank=True)
    response_status = models.IntegerField(null=True, blank=True)
    response_body = models.TextField(blank=True)
    last_error = models.TextField(blank=True)
    delivered_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "webhook_delivery_log"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="webhook_status_retry_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.method} {self.url} - {self.status}"

    def generate_signature(self) -> str:
        """HMAC-SHA256 of the raw body, hex encoded."""
        if not self.secret:
            return ""
        return hmac.new(
            self.secret.encode(),
            self.body.encode(),
            hashlib.sha256
        ).hexdigest()

    def mark_delivered(self, response_status: int, response_body: str = ""):
        self.status = self.Status.DELIVERED
        self.response_status = response_status
        self.response_body = response_body[:2000]
        self.delivered_at = timezone.now()
        self.next_retry_at = None
        self.last_error = ""
        self.save()

    def mark_failed(self, error: str, response_status=None, backoff_seconds: int = 60):
        """Schedule a retry with exponential backoff, or give up after max_attempts."""
        self.last_error = error[:2000]
        self.response_status = response_status

        if self.attempts < self.max_attempts:
            delay = min(backoff_seconds * (2 ** (self.attempts - 1)), 3600)
            self.status = self.Status.FAILED
            self.next_retry_at = timezone.now() + timedelta(seconds=delay)
        else:
            self.status = self.Status.EXHAUSTED
            self.next_retry_at = None

        self.save()

    def can_retry(self) -> bool:
        if self.status not in (self.Status.PENDING, self.Status.FAILED):
            return False
        if self.next_retry_at is None:
            return True
        return timezone.now() >= self.next_retry_at
