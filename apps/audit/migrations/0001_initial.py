# Initial audit event table

import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    """Create the AuditEvent table."""

    initial = True

    dependencies = [
        ("contenttypes", "0002_remove_content_type_name"),
    ]

    operations = [
        migrations.CreateModel(
            name="AuditEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("timestamp", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("actor_id", models.CharField(blank=True, db_index=True, max_length=150)),
                ("actor_type", models.CharField(default="user", max_length=20)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("discount_code_created", "Discount Code Created"),
                            ("discount_code_updated", "Discount Code Updated"),
                            ("referral_code_issued", "Referral Code Issued"),
                            ("reward_code_issued", "Reward Code Issued"),
                            ("code_redeemed", "Code Redeemed"),
                            ("redemption_linked", "Redemption Linked To Order"),
                            ("code_usage_reconciled", "Code Usage Reconciled"),
                            ("code_order_mismatch", "Code Not Applied To Order"),
                            ("code_reconcile_failed", "Code Reconciliation Failed"),
                            ("reward_issue_failed", "Reward Issue Failed"),
                            ("webhook_rejected", "Webhook Rejected"),
                        ],
                        db_index=True,
                        max_length=40,
                    ),
                ),
                (
                    "severity",
                    models.CharField(
                        choices=[("low", "Low"), ("medium", "Medium"), ("high", "High"), ("critical", "Critical")],
                        db_index=True,
                        default="low",
                        max_length=10,
                    ),
                ),
                ("object_id", models.CharField(blank=True, db_index=True, max_length=36)),
                ("old_values", models.JSONField(blank=True, default=dict)),
                ("new_values", models.JSONField(blank=True, default=dict)),
                ("description", models.TextField(blank=True)),
                ("request_id", models.CharField(blank=True, db_index=True, max_length=64)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "content_type",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        to="contenttypes.contenttype",
                    ),
                ),
            ],
            options={
                "db_table": "audit_event",
                "ordering": ("-timestamp",),
                "indexes": [
                    models.Index(fields=["content_type", "object_id", "-timestamp"], name="audit_event_content_3f2a1b_idx"),
                    models.Index(fields=["action", "-timestamp"], name="audit_event_action_8c4d2e_idx"),
                    models.Index(fields=["severity", "-timestamp"], name="audit_event_severit_5e7f9a_idx"),
                ],
            },
        ),
    ]
