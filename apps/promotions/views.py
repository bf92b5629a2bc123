"""
Views for the Promotions app.
JSON endpoints for referral codes, checkout redemptions, the order-completed
webhook and staff code administration.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from django.http import HttpRequest, HttpResponse, JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django_ratelimit.decorators import ratelimit

from apps.audit.services import AuditService
from apps.common.decorators import api_login_required, request_subject, staff_required
from apps.common.logging import get_logger
from apps.common.request_ip import get_safe_client_ip
from apps.common.types import ValidationError

from .models import DiscountCode
from .services import (
    CodeRegistryService,
    DuplicateCodeError,
    OrderCompletedEvent,
    OrderCompletionService,
    RedemptionError,
    RedemptionLedgerService,
    ReferralStatsService,
    RegistryError,
    StoreUnavailableError,
    promotions_setting,
)
from .webhooks import SIGNATURE_HEADER, verify_order_webhook

logger = get_logger(__name__, component="promotions")

REDEMPTION_ERROR_STATUS = {
    RedemptionError.INVALID_CODE: 404,
    RedemptionError.SELF_REDEMPTION_NOT_ALLOWED: 403,
    RedemptionError.CODE_EXHAUSTED: 409,
}


# ===============================================================================
# Helpers
# ===============================================================================


def _error(message: str, error_code: str, status: int) -> JsonResponse:
    return JsonResponse({"success": False, "error": message, "error_code": error_code}, status=status)


def _request_data(request: HttpRequest) -> dict[str, Any]:
    """JSON body when the client sent one, form data otherwise."""
    if request.content_type == "application/json":
        if not request.body:
            return {}
        try:
            data = json.loads(request.body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data
    return request.POST.dict()


def _parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value in (None, ""):
        return None
    parsed = parse_datetime(str(value))
    if parsed is None:
        raise ValidationError(f"{field_name} must be an ISO 8601 datetime", field=field_name)
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def _code_to_dict(code: DiscountCode) -> dict[str, Any]:
    return {
        "id": str(code.id),
        "code": code.code,
        "kind": code.kind,
        "name": code.name,
        "description": code.description,
        "discount_type": code.discount_type,
        "discount_amount": str(code.discount_amount),
        "valid_from": code.valid_from.isoformat(),
        "valid_until": code.valid_until.isoformat() if code.valid_until else None,
        "max_usage": code.max_usage,
        "usage_count": code.usage_count,
        "owner_id": code.owner_id,
        "has_balance_limit": code.has_balance_limit,
        "initial_balance": str(code.initial_balance) if code.initial_balance is not None else None,
        "remaining_balance": str(code.remaining_balance) if code.remaining_balance is not None else None,
        "is_active": code.is_active,
        "created_at": code.created_at.isoformat(),
    }


class LedgerAPIView(View):
    """
    Base JSON view.

    Maps the ledger's exceptions to HTTP responses in one place and turns
    away rate-limited requests (set by django-ratelimit with block=False).
    """

    http_method_names = ["get", "post", "patch"]

    def dispatch(self, request: HttpRequest, *args: Any, **kwargs: Any) -> HttpResponse:
        if getattr(request, "limited", False):
            logger.warning("⚠️ [Promotions] Rate limit exceeded for %s from IP %s", request.path, get_safe_client_ip(request))
            return _error("Too many requests. Please try again later.", "RATE_LIMITED", 429)

        try:
            return super().dispatch(request, *args, **kwargs)
        except ValidationError as e:
            return _error(str(e), "VALIDATION_ERROR", 400)
        except DuplicateCodeError as e:
            return _error(str(e), "DUPLICATE_CODE", 409)
        except RegistryError as e:
            logger.error("🔥 [Promotions] Registry error on %s: %s", request.path, e)
            return _error(str(e), "REGISTRY_ERROR", 409)
        except StoreUnavailableError:
            return _error("Service temporarily unavailable. Please retry.", "STORE_UNAVAILABLE", 503)


# ===============================================================================
# Referral Views
# ===============================================================================


@method_decorator(api_login_required, name="dispatch")
@method_decorator(ratelimit(key="user", rate="30/m", method="POST", block=False), name="dispatch")  # type: ignore[misc]
class ReferralCodeView(LedgerAPIView):
    """Return the caller's referral code, creating it on first request."""

    http_method_names = ["get", "post"]

    def get(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        code = CodeRegistryService.get_or_create_referral_code(request_subject(request))
        return JsonResponse({"success": True, "code": code})

    def post(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        return self.get(request, *args, **kwargs)


@method_decorator(api_login_required, name="dispatch")
class ReferralStatsView(LedgerAPIView):
    http_method_names = ["get"]

    def get(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        stats = ReferralStatsService.get_referral_stats(request_subject(request))
        return JsonResponse(
            {
                "success": True,
                "referral_code": stats.referral_code,
                "total_referrals": stats.total_referrals,
                "successful_referrals": stats.successful_referrals,
                "pending_referrals": stats.pending_referrals,
                "earned_rewards": stats.earned_rewards,
            }
        )


@method_decorator(api_login_required, name="dispatch")
class OwnedRewardCodesView(LedgerAPIView):
    http_method_names = ["get"]

    def get(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        summaries = CodeRegistryService.list_owned_reward_codes(request_subject(request))
        return JsonResponse({"success": True, "codes": [summary.to_dict() for summary in summaries]})


@method_decorator(api_login_required, name="dispatch")
class OwnedReferralCodeView(LedgerAPIView):
    http_method_names = ["get"]

    def get(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        summaries = CodeRegistryService.get_owned_referral_code(request_subject(request))
        return JsonResponse({"success": True, "codes": [summary.to_dict() for summary in summaries]})


# ===============================================================================
# Checkout Views
# ===============================================================================


@method_decorator(api_login_required, name="dispatch")
@method_decorator(ratelimit(key="ip", rate="30/m", method="POST", block=False), name="dispatch")  # type: ignore[misc]
@method_decorator(ratelimit(key="user", rate="10/m", method="POST", block=False), name="dispatch")  # type: ignore[misc]
class RedeemCodeView(LedgerAPIView):
    """
    Apply a code at checkout.

    Rate limited to prevent brute-force guessing of codes.
    """

    http_method_names = ["post"]

    def post(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        data = _request_data(request)
        result = RedemptionLedgerService.redeem(data.get("code"), request_subject(request))

        if result.is_err():
            error = result.unwrap_err()
            return _error(error.message, error.value, REDEMPTION_ERROR_STATUS[error])

        return JsonResponse({"success": True, "redemption_id": result.unwrap()}, status=201)


@method_decorator(api_login_required, name="dispatch")
@method_decorator(ratelimit(key="user", rate="30/m", method="POST", block=False), name="dispatch")  # type: ignore[misc]
class LinkRedemptionView(LedgerAPIView):
    """Attach the checkout's order id to the caller's redemption."""

    http_method_names = ["post"]

    def post(self, request: HttpRequest, redemption_id: Any, *args: Any, **kwargs: Any) -> JsonResponse:
        data = _request_data(request)
        linked = RedemptionLedgerService.link_order(
            redemption_id,
            data.get("order_id"),
            redeemer_id=request_subject(request),
        )
        if not linked:
            return _error("Redemption not found or already linked to another order", "NOT_LINKABLE", 409)
        return JsonResponse({"success": True, "redemption_id": str(redemption_id)})


# ===============================================================================
# Webhooks
# ===============================================================================


@method_decorator(csrf_exempt, name="dispatch")
@method_decorator(ratelimit(key="ip", rate="120/m", method="POST", block=False), name="dispatch")  # type: ignore[misc]
class OrderCompletedWebhookView(LedgerAPIView):
    """
    Order-completed notification from the payment subsystem.

    Any correctly signed, well-formed event is acknowledged with 200 even
    when individual ledger steps fail, so a settled order is never retried
    because of a ledger anomaly.
    """

    http_method_names = ["post"]

    def post(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        verified = verify_order_webhook(
            promotions_setting("ORDER_WEBHOOK_SECRET"),
            request.body,
            request.headers.get(SIGNATURE_HEADER, ""),
        )
        if verified.is_err():
            reason = verified.unwrap_err()
            logger.warning(
                "⚠️ [Promotions] Order webhook rejected from %s: %s",
                get_safe_client_ip(request),
                reason,
                body_size=len(request.body),
            )
            AuditService.log_simple_event(
                "webhook_rejected",
                actor_type="webhook",
                description=reason,
                metadata={"path": request.path, "body_size": len(request.body)},
            )
            return _error(reason, "INVALID_WEBHOOK", 401)

        event = OrderCompletedEvent.from_payload(verified.unwrap())
        result = OrderCompletionService.on_order_completed(event)
        if result.errors:
            logger.error("🔥 [Promotions] Order %s acknowledged with errors: %s", event.order_id, result.errors)
        return JsonResponse(result.to_dict())


# ===============================================================================
# Staff Administration
# ===============================================================================


@method_decorator(staff_required, name="dispatch")
class AdminCodeListView(LedgerAPIView):
    """List codes (optionally by ?kind=) or create a promotional code."""

    http_method_names = ["get", "post"]

    def get(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        kind = request.GET.get("kind") or None
        codes = CodeRegistryService.list_codes(kind=kind)
        return JsonResponse({"success": True, "codes": [_code_to_dict(code) for code in codes]})

    def post(self, request: HttpRequest, *args: Any, **kwargs: Any) -> JsonResponse:
        data = _request_data(request)
        code = CodeRegistryService.create_promotional_code(
            code=data.get("code"),
            discount_amount=data.get("discount_amount"),
            discount_type=data.get("discount_type", DiscountCode.TYPE_PERCENT),
            max_usage=data.get("max_usage", 1),
            valid_from=_parse_datetime(data.get("valid_from"), "valid_from"),
            valid_until=_parse_datetime(data.get("valid_until"), "valid_until"),
            has_balance_limit=bool(data.get("has_balance_limit", False)),
            initial_balance=data.get("initial_balance"),
            owner_id=data.get("owner_id") or "",
            name=data.get("name", ""),
            description=data.get("description", ""),
        )
        return JsonResponse({"success": True, "code": _code_to_dict(code)}, status=201)


@method_decorator(staff_required, name="dispatch")
class AdminCodeDetailView(LedgerAPIView):
    http_method_names = ["get", "patch"]

    def get(self, request: HttpRequest, pk: Any, *args: Any, **kwargs: Any) -> JsonResponse:
        code = CodeRegistryService.get_code(pk)
        if code is None:
            return _error("Code not found", "NOT_FOUND", 404)
        return JsonResponse({"success": True, "code": _code_to_dict(code)})

    def patch(self, request: HttpRequest, pk: Any, *args: Any, **kwargs: Any) -> JsonResponse:
        if CodeRegistryService.get_code(pk) is None:
            return _error("Code not found", "NOT_FOUND", 404)

        changes = _request_data(request)
        for field_name in ("valid_from", "valid_until"):
            if field_name in changes:
                changes[field_name] = _parse_datetime(changes[field_name], field_name)

        code = CodeRegistryService.update_promotional_code(pk, **changes)
        return JsonResponse({"success": True, "code": _code_to_dict(code)})
