"""
Signal handlers for Promotions app.
Audit logging for discount code creation and staff edits.

Counter and balance changes go through queryset.update() and never reach
these receivers; the reconciler audits those itself.
"""

from __future__ import annotations

import logging
from typing import Any

from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver

from apps.audit.services import AuditService
from apps.common.logging import get_request_context

from .models import DiscountCode

logger = logging.getLogger(__name__)

TRACKED_CODE_FIELDS = (
    "is_active",
    "discount_type",
    "discount_amount",
    "valid_from",
    "valid_until",
    "max_usage",
    "has_balance_limit",
    "initial_balance",
    "remaining_balance",
)

CREATION_ACTIONS = {
    DiscountCode.KIND_REFERRAL: "referral_code_issued",
    DiscountCode.KIND_REWARD: "reward_code_issued",
    DiscountCode.KIND_PROMOTIONAL: "discount_code_created",
}


# ===============================================================================
# Helper Functions
# ===============================================================================


def get_model_changes(instance: Any, fields: tuple[str, ...]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Old and new values for the fields that changed since pre_save."""
    old_values: dict[str, Any] = {}
    new_values: dict[str, Any] = {}
    snapshot = getattr(instance, "_audit_snapshot", None) or {}

    for field in fields:
        if field not in snapshot:
            continue
        old_value = snapshot[field]
        new_value = getattr(instance, field, None)
        if old_value != new_value:
            old_values[field] = old_value
            new_values[field] = new_value

    return old_values, new_values


def _current_actor() -> str | None:
    return get_request_context().get("user_id")


# ===============================================================================
# Discount Code Signals
# ===============================================================================


@receiver(pre_save, sender=DiscountCode)
def discount_code_pre_save(sender: type, instance: DiscountCode, **kwargs: Any) -> None:
    """Store old values before a code is saved."""
    if instance._state.adding:
        return
    snapshot = DiscountCode.objects.filter(pk=instance.pk).values(*TRACKED_CODE_FIELDS).first()
    instance._audit_snapshot = snapshot or {}  # type: ignore[attr-defined]


@receiver(post_save, sender=DiscountCode)
def discount_code_post_save(sender: type, instance: DiscountCode, created: bool, **kwargs: Any) -> None:
    """Log code creation and tracked changes."""
    if created:
        AuditService.log_simple_event(
            CREATION_ACTIONS[instance.kind],
            actor_id=_current_actor(),
            content_object=instance,
            description=f"{instance.get_kind_display()} code {instance.code} created",
            new_values={
                "code": instance.code,
                "kind": instance.kind,
                "owner_id": instance.owner_id,
                "discount_type": instance.discount_type,
                "discount_amount": instance.discount_amount,
                "max_usage": instance.max_usage,
                "valid_until": instance.valid_until,
                "initial_balance": instance.initial_balance,
            },
        )
        logger.info("🏷️ [Promotions] %s code created: %s", instance.kind, instance.code)
        return

    old_values, new_values = get_model_changes(instance, TRACKED_CODE_FIELDS)
    if not old_values:
        return

    # Balance corrections and deactivations get a second look
    severity = "low"
    if "remaining_balance" in new_values or new_values.get("is_active") is False:
        severity = "medium"

    AuditService.log_simple_event(
        "discount_code_updated",
        actor_id=_current_actor(),
        content_object=instance,
        description=f"Discount code {instance.code} updated",
        old_values=old_values,
        new_values=new_values,
        severity=severity,
    )
    logger.info("🏷️ [Promotions] Code updated: %s (%s)", instance.code, ", ".join(sorted(new_values)))
