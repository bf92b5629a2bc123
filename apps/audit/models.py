"""
Audit models for tracking ledger changes.
Every code lifecycle change, redemption and reconciliation anomaly lands here.
"""

import uuid
from typing import ClassVar

from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.db import models


class AuditEvent(models.Model):
    """Immutable audit log for all ledger changes."""

    ACTION_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        # Code registry
        ("discount_code_created", "Discount Code Created"),
        ("discount_code_updated", "Discount Code Updated"),
        ("referral_code_issued", "Referral Code Issued"),
        ("reward_code_issued", "Reward Code Issued"),
        # Redemption ledger
        ("code_redeemed", "Code Redeemed"),
        ("redemption_linked", "Redemption Linked To Order"),
        # Reconciliation
        ("code_usage_reconciled", "Code Usage Reconciled"),
        ("code_order_mismatch", "Code Not Applied To Order"),
        ("code_reconcile_failed", "Code Reconciliation Failed"),
        ("reward_issue_failed", "Reward Issue Failed"),
        # Integration
        ("webhook_rejected", "Webhook Rejected"),
    )

    SEVERITY_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("low", "Low"),
        ("medium", "Medium"),
        ("high", "High"),
        ("critical", "Critical"),
    )

    # Unique event ID
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # When and where
    timestamp = models.DateTimeField(auto_now_add=True, db_index=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)

    # Who: opaque subject id from the identity provider, empty for system actions
    actor_id = models.CharField(max_length=150, blank=True, db_index=True)
    actor_type = models.CharField(max_length=20, default="user")  # user, system, webhook

    # What
    action = models.CharField(max_length=40, choices=ACTION_CHOICES, db_index=True)
    severity = models.CharField(max_length=10, choices=SEVERITY_CHOICES, default="low", db_index=True)

    # What object (generic foreign key, UUID primary keys stored as text)
    content_type = models.ForeignKey(ContentType, on_delete=models.CASCADE, null=True, blank=True)
    object_id = models.CharField(max_length=36, blank=True, db_index=True)
    content_object = GenericForeignKey("content_type", "object_id")

    # Changes
    old_values = models.JSONField(default=dict, blank=True)
    new_values = models.JSONField(default=dict, blank=True)

    # Context
    description = models.TextField(blank=True)
    request_id = models.CharField(max_length=64, blank=True, db_index=True)

    # Additional metadata
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "audit_event"
        ordering: ClassVar[tuple[str, ...]] = ("-timestamp",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["content_type", "object_id", "-timestamp"], name="audit_event_content_3f2a1b_idx"),
            models.Index(fields=["action", "-timestamp"], name="audit_event_action_8c4d2e_idx"),
            models.Index(fields=["severity", "-timestamp"], name="audit_event_severit_5e7f9a_idx"),
        )

    def __str__(self) -> str:
        return f"{self.action} on {self.content_type or '-'} by {self.actor_id or 'System'}"
