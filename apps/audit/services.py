"""
Audit services for the code ledger.
Single write path into AuditEvent with request correlation and JSON-safe payloads.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from django.contrib.contenttypes.models import ContentType
from django.db.models import Model, QuerySet

from apps.common.logging import get_request_context

from .models import AuditEvent

logger = logging.getLogger(__name__)

# Severity used when the caller does not pass one
_DEFAULT_SEVERITY: dict[str, str] = {
    "code_order_mismatch": "medium",
    "code_reconcile_failed": "high",
    "reward_issue_failed": "critical",
    "webhook_rejected": "medium",
}


class AuditJSONEncoder(json.JSONEncoder):
    """
    JSON encoder for audit payloads.

    Decimals are kept as strings so money values never lose precision.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Decimal):
            return str(obj)
        elif isinstance(obj, Model):
            return f"{obj.__class__.__name__}(pk={obj.pk})"
        return super().default(obj)


def serialize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Round-trip a payload through AuditJSONEncoder so it is safe for a JSONField."""
    if not payload:
        return {}
    return json.loads(json.dumps(payload, cls=AuditJSONEncoder, ensure_ascii=False))  # type: ignore[no-any-return]


class AuditService:
    """Write and query audit events"""

    @staticmethod
    def log_simple_event(  # noqa: PLR0913
        event_type: str,
        *,
        actor_id: str | None = None,
        content_object: Model | None = None,
        description: str = "",
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        actor_type: str = "user",
        severity: str | None = None,
    ) -> AuditEvent:
        """
        Record one audit event.

        Args:
            event_type: One of AuditEvent.ACTION_CHOICES
            actor_id: Subject id of whoever triggered the event (None for system actions)
            content_object: Model instance being audited
            description: Human-readable description
            old_values: Previous values (for updates)
            new_values: New values (for updates)
            metadata: Additional metadata
            ip_address: IP address of the actor, defaults to the current request's
            actor_type: "user", "system" or "webhook"
            severity: Overrides the default severity for the event type
        """
        context = get_request_context()

        content_type = None
        object_id = ""
        if content_object is not None:
            content_type = ContentType.objects.get_for_model(content_object)
            object_id = str(content_object.pk)

        try:
            event = AuditEvent.objects.create(
                actor_id=actor_id or "",
                actor_type=actor_type if actor_id or actor_type != "user" else "system",
                action=event_type,
                severity=severity or _DEFAULT_SEVERITY.get(event_type, "low"),
                content_type=content_type,
                object_id=object_id,
                old_values=serialize_payload(old_values),
                new_values=serialize_payload(new_values),
                description=description,
                ip_address=ip_address or context["ip_address"],
                request_id=context["request_id"] if context["request_id"] != "-" else "",
                metadata=serialize_payload(metadata),
            )
        except Exception:
            logger.exception("🔥 [Audit] Failed to log event %s", event_type)
            raise

        logger.debug("✅ [Audit] %s logged (%s)", event_type, event.severity)
        return event

    @staticmethod
    def events_for(obj: Model) -> QuerySet[AuditEvent]:
        """All events recorded against a model instance, newest first."""
        return AuditEvent.objects.filter(
            content_type=ContentType.objects.get_for_model(obj),
            object_id=str(obj.pk),
        )
