"""
Promotions models for the code ledger.

Two tables:
- DiscountCode: catalog of referral, reward and promotional codes
- CodeRedemption: append-only ledger of code applications at checkout

Correctness under concurrent requests rests on the store-level constraints
declared here (unique code, one referral code per owner, one redemption per
single-use code, counter and balance bounds), not on in-process checks.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

# ===============================================================================
# Constants
# ===============================================================================

CODE_MAX_LENGTH = 50
MAX_DISCOUNT_PERCENT = Decimal("100.00")
MAX_USAGE_LIMIT = 999_999


# ===============================================================================
# Discount Codes
# ===============================================================================


class DiscountCode(models.Model):
    """
    A referral, reward or promotional discount code.
    Only counters and balances change after creation; rows are never deleted.
    """

    KIND_REFERRAL = "referral"
    KIND_REWARD = "reward"
    KIND_PROMOTIONAL = "promotional"
    KINDS: ClassVar[tuple[tuple[str, Any], ...]] = (
        (KIND_REFERRAL, _("Referral")),
        (KIND_REWARD, _("Reward")),
        (KIND_PROMOTIONAL, _("Promotional")),
    )

    TYPE_PERCENT = "percent"
    TYPE_FIXED = "fixed"
    DISCOUNT_TYPES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (TYPE_PERCENT, _("Percentage Discount")),
        (TYPE_FIXED, _("Fixed Amount Discount")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # Identification
    code = models.CharField(
        max_length=CODE_MAX_LENGTH,
        unique=True,
        help_text=_("Unique code string, stored upper-case"),
    )
    kind = models.CharField(max_length=20, choices=KINDS, default=KIND_PROMOTIONAL, db_index=True)
    name = models.CharField(max_length=200, blank=True, help_text=_("Internal name for staff"))
    description = models.TextField(blank=True)

    # Discount
    discount_type = models.CharField(max_length=10, choices=DISCOUNT_TYPES, default=TYPE_PERCENT)
    discount_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text=_("Percentage (0-100) or fixed amount depending on discount_type"),
    )

    # Validity window
    valid_from = models.DateTimeField(default=timezone.now)
    valid_until = models.DateTimeField(null=True, blank=True, help_text=_("Leave empty for no expiry"))

    # Usage
    max_usage = models.PositiveIntegerField(null=True, blank=True, help_text=_("Leave empty for unlimited"))
    usage_count = models.PositiveIntegerField(default=0)

    # Beneficiary: opaque identity-provider subject id
    owner_id = models.CharField(max_length=150, blank=True, default="", db_index=True)

    # Prepaid balance
    has_balance_limit = models.BooleanField(default=False)
    initial_balance = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    remaining_balance = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    # Status
    is_active = models.BooleanField(default=True)
    version = models.PositiveIntegerField(default=0, help_text=_("Optimistic concurrency counter"))

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "promotion_discount_codes"
        verbose_name = _("Discount Code")
        verbose_name_plural = _("Discount Codes")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["owner_id", "kind"], name="promo_code_owner_kind_idx"),
            models.Index(fields=["is_active", "valid_until"], name="promo_code_active_idx"),
        )
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            # One referral code per owner
            models.UniqueConstraint(
                fields=["owner_id"],
                condition=Q(kind="referral"),
                name="unique_referral_code_per_owner",
            ),
            models.CheckConstraint(
                condition=Q(max_usage__isnull=True) | Q(usage_count__lte=models.F("max_usage")),
                name="discount_code_usage_within_max",
            ),
            models.CheckConstraint(
                condition=Q(has_balance_limit=False)
                | Q(
                    remaining_balance__gte=0,
                    initial_balance__isnull=False,
                    remaining_balance__lte=models.F("initial_balance"),
                ),
                name="discount_code_balance_bounds",
            ),
            models.CheckConstraint(
                condition=Q(discount_amount__gte=0),
                name="discount_code_amount_non_negative",
            ),
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.kind})"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize code to uppercase before saving."""
        if self.code:
            self.code = self.code.upper().strip()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Validate discount and balance configuration."""
        super().clean()
        if self.discount_type == self.TYPE_PERCENT and self.discount_amount > MAX_DISCOUNT_PERCENT:
            raise ValidationError({"discount_amount": _("Percentage discount must be between 0 and 100")})
        if self.has_balance_limit and self.initial_balance is None:
            raise ValidationError({"initial_balance": _("Balance-limited codes need an initial balance")})
        if self.valid_until and self.valid_until <= self.valid_from:
            raise ValidationError({"valid_until": _("Expiry must be after the start of validity")})

    @property
    def is_expired(self) -> bool:
        """Check if the validity window has closed."""
        if self.valid_until is None:
            return False
        return timezone.now() > self.valid_until

    @property
    def is_not_yet_valid(self) -> bool:
        return timezone.now() < self.valid_from

    @property
    def is_single_use(self) -> bool:
        return self.max_usage == 1

    @property
    def is_depleted(self) -> bool:
        """True once the usage counter or the prepaid balance is used up."""
        if self.max_usage is not None and self.usage_count >= self.max_usage:
            return True
        return bool(self.has_balance_limit and (self.remaining_balance or Decimal("0")) <= 0)

    def is_currently_valid(self) -> bool:
        return self.is_active and not self.is_not_yet_valid and not self.is_expired


# ===============================================================================
# Redemptions
# ===============================================================================


class CodeRedemption(models.Model):
    """
    One application of a code at checkout.

    pending -> linked (order id known) -> rewarded (referral codes only).
    No transition ever reverses.
    """

    STATUS_PENDING = "pending"
    STATUS_LINKED = "linked"
    STATUS_REWARDED = "rewarded"
    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (STATUS_PENDING, _("Pending")),
        (STATUS_LINKED, _("Linked")),
        (STATUS_REWARDED, _("Rewarded")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    code = models.ForeignKey(
        DiscountCode,
        on_delete=models.PROTECT,
        related_name="redemptions",
    )
    redeemer_id = models.CharField(max_length=150, db_index=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)

    # External order, known once payment starts or completes
    order_id = models.CharField(max_length=100, null=True, blank=True, db_index=True)

    redeemed_at = models.DateTimeField(default=timezone.now)
    linked_at = models.DateTimeField(null=True, blank=True)
    reward_issued_at = models.DateTimeField(null=True, blank=True)
    reward_code = models.ForeignKey(
        DiscountCode,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="source_redemptions",
    )

    # Snapshot of max_usage == 1 at redemption time; drives the single-use guard
    is_single_use = models.BooleanField(default=False)

    class Meta:
        db_table = "promotion_code_redemptions"
        verbose_name = _("Code Redemption")
        verbose_name_plural = _("Code Redemptions")
        ordering: ClassVar[tuple[str, ...]] = ("-redeemed_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["redeemer_id", "status"], name="promo_redemption_redeemer_idx"),
            models.Index(fields=["code", "status"], name="promo_redemption_code_idx"),
        )
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            # At most one winner for a single-use code
            models.UniqueConstraint(
                fields=["code"],
                condition=Q(is_single_use=True),
                name="unique_redemption_single_use_code",
            ),
            # A checkout retry reuses the open redemption instead of adding another
            models.UniqueConstraint(
                fields=["code", "redeemer_id"],
                condition=Q(status="pending"),
                name="unique_pending_redemption_per_redeemer",
            ),
            models.CheckConstraint(
                condition=Q(reward_issued_at__isnull=True) | Q(order_id__isnull=False),
                name="redemption_reward_requires_order",
            ),
        )

    def __str__(self) -> str:
        return f"{self.code.code} by {self.redeemer_id} ({self.status})"
