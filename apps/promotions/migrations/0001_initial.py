# Initial code ledger tables

import uuid
from decimal import Decimal

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    """Create DiscountCode and CodeRedemption with their guarding constraints."""

    initial = True

    dependencies: list[tuple[str, str]] = []

    operations = [
        migrations.CreateModel(
            name="DiscountCode",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "code",
                    models.CharField(help_text="Unique code string, stored upper-case", max_length=50, unique=True),
                ),
                (
                    "kind",
                    models.CharField(
                        choices=[("referral", "Referral"), ("reward", "Reward"), ("promotional", "Promotional")],
                        db_index=True,
                        default="promotional",
                        max_length=20,
                    ),
                ),
                ("name", models.CharField(blank=True, help_text="Internal name for staff", max_length=200)),
                ("description", models.TextField(blank=True)),
                (
                    "discount_type",
                    models.CharField(
                        choices=[("percent", "Percentage Discount"), ("fixed", "Fixed Amount Discount")],
                        default="percent",
                        max_length=10,
                    ),
                ),
                (
                    "discount_amount",
                    models.DecimalField(
                        decimal_places=2,
                        default=Decimal("0.00"),
                        help_text="Percentage (0-100) or fixed amount depending on discount_type",
                        max_digits=12,
                    ),
                ),
                ("valid_from", models.DateTimeField(default=django.utils.timezone.now)),
                ("valid_until", models.DateTimeField(blank=True, help_text="Leave empty for no expiry", null=True)),
                (
                    "max_usage",
                    models.PositiveIntegerField(blank=True, help_text="Leave empty for unlimited", null=True),
                ),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("owner_id", models.CharField(blank=True, db_index=True, default="", max_length=150)),
                ("has_balance_limit", models.BooleanField(default=False)),
                ("initial_balance", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("remaining_balance", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("is_active", models.BooleanField(default=True)),
                (
                    "version",
                    models.PositiveIntegerField(default=0, help_text="Optimistic concurrency counter"),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Discount Code",
                "verbose_name_plural": "Discount Codes",
                "db_table": "promotion_discount_codes",
                "ordering": ("-created_at",),
                "indexes": [
                    models.Index(fields=["owner_id", "kind"], name="promo_code_owner_kind_idx"),
                    models.Index(fields=["is_active", "valid_until"], name="promo_code_active_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("kind", "referral")),
                        fields=("owner_id",),
                        name="unique_referral_code_per_owner",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("max_usage__isnull", True),
                            ("usage_count__lte", models.F("max_usage")),
                            _connector="OR",
                        ),
                        name="discount_code_usage_within_max",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("has_balance_limit", False),
                            models.Q(
                                ("initial_balance__isnull", False),
                                ("remaining_balance__gte", 0),
                                ("remaining_balance__lte", models.F("initial_balance")),
                            ),
                            _connector="OR",
                        ),
                        name="discount_code_balance_bounds",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("discount_amount__gte", 0)),
                        name="discount_code_amount_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CodeRedemption",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("redeemer_id", models.CharField(db_index=True, max_length=150)),
                (
                    "status",
                    models.CharField(
                        choices=[("pending", "Pending"), ("linked", "Linked"), ("rewarded", "Rewarded")],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("order_id", models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ("redeemed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("linked_at", models.DateTimeField(blank=True, null=True)),
                ("reward_issued_at", models.DateTimeField(blank=True, null=True)),
                ("is_single_use", models.BooleanField(default=False)),
                (
                    "code",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="redemptions",
                        to="promotions.discountcode",
                    ),
                ),
                (
                    "reward_code",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="source_redemptions",
                        to="promotions.discountcode",
                    ),
                ),
            ],
            options={
                "verbose_name": "Code Redemption",
                "verbose_name_plural": "Code Redemptions",
                "db_table": "promotion_code_redemptions",
                "ordering": ("-redeemed_at",),
                "indexes": [
                    models.Index(fields=["redeemer_id", "status"], name="promo_redemption_redeemer_idx"),
                    models.Index(fields=["code", "status"], name="promo_redemption_code_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_single_use", True)),
                        fields=("code",),
                        name="unique_redemption_single_use_code",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("code", "redeemer_id"),
                        name="unique_pending_redemption_per_redeemer",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("reward_issued_at__isnull", True), ("order_id__isnull", False), _connector="OR"),
                        name="redemption_reward_requires_order",
                    ),
                ],
            },
        ),
    ]
