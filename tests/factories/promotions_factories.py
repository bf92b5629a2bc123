# ===============================================================================
# TEST FACTORIES FOR PROMOTIONS
# ===============================================================================

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any

from django.contrib.auth import get_user_model
from django.utils import timezone

from apps.promotions.models import CodeRedemption, DiscountCode

User = get_user_model()

WEBHOOK_SECRET = "test-order-webhook-secret"  # noqa: S105


# ===============================================================================
# DISCOUNT CODE FACTORY PARAMETER OBJECTS
# ===============================================================================

@dataclass
class CodeCreationRequest:
    """Parameter object for discount code creation"""
    code: str = 'SAVE10'
    kind: str = DiscountCode.KIND_PROMOTIONAL
    discount_type: str = DiscountCode.TYPE_PERCENT
    discount_amount: Decimal = Decimal('10.00')
    max_usage: int | None = None
    owner_id: str = ''
    has_balance_limit: bool = False
    initial_balance: Decimal | None = None
    is_active: bool = True
    valid_days: int | None = 30


def create_user(username: str = 'buyer-1', is_staff: bool = False) -> Any:
    """Create a user whose username doubles as the identity-provider subject id."""
    return User.objects.create_user(username=username, password='testpass123', is_staff=is_staff)


def create_code(request: CodeCreationRequest | None = None) -> DiscountCode:
    """Create a DiscountCode with sensible defaults, bypassing the service layer."""
    request = request or CodeCreationRequest()
    now = timezone.now()
    return DiscountCode.objects.create(
        code=request.code,
        kind=request.kind,
        discount_type=request.discount_type,
        discount_amount=request.discount_amount,
        max_usage=request.max_usage,
        owner_id=request.owner_id,
        has_balance_limit=request.has_balance_limit,
        initial_balance=request.initial_balance,
        remaining_balance=request.initial_balance,
        is_active=request.is_active,
        valid_from=now - timedelta(minutes=5),
        valid_until=now + timedelta(days=request.valid_days) if request.valid_days is not None else None,
    )


def create_referral_code(owner_id: str = 'referrer-1', code: str = 'REFABC') -> DiscountCode:
    return create_code(CodeCreationRequest(code=code, kind=DiscountCode.KIND_REFERRAL, owner_id=owner_id,
                                           discount_amount=Decimal('0.00'), valid_days=365))


def create_balance_code(code: str = 'SAVE50', balance: Decimal = Decimal('500.00'),
                        max_usage: int | None = None) -> DiscountCode:
    return create_code(CodeCreationRequest(code=code, discount_type=DiscountCode.TYPE_FIXED,
                                           discount_amount=Decimal('50.00'), has_balance_limit=True,
                                           initial_balance=balance, max_usage=max_usage))


def create_redemption(code: DiscountCode, redeemer_id: str = 'buyer-1', order_id: str | None = None,
                      status: str = CodeRedemption.STATUS_PENDING) -> CodeRedemption:
    return CodeRedemption.objects.create(
        code=code,
        redeemer_id=redeemer_id,
        order_id=order_id,
        status=status,
        is_single_use=code.is_single_use,
    )


def signed_webhook(payload: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
    """Raw body and X-Signature header value for an order-completed delivery."""
    body = json.dumps(payload).encode('utf-8')
    signature = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return body, f'sha256={signature}'
