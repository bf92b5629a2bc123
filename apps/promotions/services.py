"""
Promotion services for the code ledger.

- CodeRegistryService: referral, reward and promotional code records
- RedemptionLedgerService: checkout-time code applications
- RewardIssuerService: one reward code per qualifying referral redemption
- UsageReconciliationService: usage counters and prepaid balances after payment
- OrderCompletionService: entry point for the order-completed event
- ReferralStatsService: dashboard numbers for a referrer
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import re
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError, IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import F, Q, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from apps.audit.services import AuditService
from apps.common.types import BusinessError, Err, Ok, Result, UserId, ValidationError, to_amount

from .matching import order_applies_code
from .models import CODE_MAX_LENGTH, MAX_DISCOUNT_PERCENT, MAX_USAGE_LIMIT, CodeRedemption, DiscountCode

logger = logging.getLogger(__name__)


# ===============================================================================
# Configuration
# ===============================================================================

PROMOTIONS_DEFAULTS: dict[str, Any] = {
    "REFERRAL_CODE_PREFIX": "REF",
    "REFERRAL_VALIDITY_YEARS": 50,
    "REWARD_CODE_PREFIX": "REWARD",
    "REWARD_DISCOUNT_PERCENT": Decimal("15"),
    "REWARD_VALIDITY_DAYS": 3,
    "CODE_GENERATION_MAX_ATTEMPTS": 5,
    "RECONCILE_MAX_RETRIES": 3,
    "ORDER_WEBHOOK_SECRET": "",
}


def promotions_setting(key: str) -> Any:
    """Read one PROMOTIONS setting, falling back to the built-in default."""
    configured = getattr(settings, "PROMOTIONS", {}) or {}
    return configured.get(key, PROMOTIONS_DEFAULTS[key])


CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,%d}$" % CODE_MAX_LENGTH)
ID_MAX_LENGTH = 150
ORDER_ID_MAX_LENGTH = 100
BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
REFERRAL_STEM_LENGTH = 8
REFERRAL_HASH_LENGTH = 6
REWARD_HASH_LENGTH = 10
DEFAULT_LIST_LIMIT = 100


# ===============================================================================
# Errors
# ===============================================================================


class RedemptionError(str, Enum):
    """Expected, user-facing reasons a code cannot be applied."""

    INVALID_CODE = "INVALID_CODE"
    SELF_REDEMPTION_NOT_ALLOWED = "SELF_REDEMPTION_NOT_ALLOWED"
    CODE_EXHAUSTED = "CODE_EXHAUSTED"

    @property
    def message(self) -> str:
        return REDEMPTION_ERROR_MESSAGES[self]


REDEMPTION_ERROR_MESSAGES: dict[RedemptionError, str] = {
    RedemptionError.INVALID_CODE: "Invalid or expired code",
    RedemptionError.SELF_REDEMPTION_NOT_ALLOWED: "You cannot use your own referral code",
    RedemptionError.CODE_EXHAUSTED: "This code has reached its usage limit",
}


class RegistryError(BusinessError):
    """Code could not be created or changed"""


class DuplicateCodeError(RegistryError):
    """Code string already taken"""


class StoreUnavailableError(BusinessError):
    """Relational store unreachable; safe to retry"""


class ConcurrencyConflictError(BusinessError):
    """Optimistic version check lost against a concurrent writer"""


@contextlib.contextmanager
def store_guard(operation: str) -> Iterator[None]:
    """Translate connectivity failures into StoreUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error("🔥 [Promotions] Store unavailable during %s: %s", operation, e)
        raise StoreUnavailableError(f"Store unavailable during {operation}") from e


def _require_id(value: Any, field_name: str, max_length: int = ID_MAX_LENGTH) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", field=field_name)
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field_name} is too long", field=field_name)
    return value


def _to_base36(number: int, width: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits)).rjust(width, "0")[:width]


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass(frozen=True)
class CodeSummary:
    """Caller-facing view of a code: what it gives, how long, how much is left."""

    code: str
    kind: str
    discount_type: str
    discount_amount: Decimal
    valid_from: datetime
    valid_until: datetime | None
    max_usage: int | None
    usage_count: int
    remaining_balance: Decimal | None
    is_usable: bool

    @classmethod
    def from_code(cls, code: DiscountCode) -> CodeSummary:
        return cls(
            code=code.code,
            kind=code.kind,
            discount_type=code.discount_type,
            discount_amount=code.discount_amount,
            valid_from=code.valid_from,
            valid_until=code.valid_until,
            max_usage=code.max_usage,
            usage_count=code.usage_count,
            remaining_balance=code.remaining_balance if code.has_balance_limit else None,
            is_usable=code.is_currently_valid() and not code.is_depleted,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind,
            "discount_type": self.discount_type,
            "discount_amount": str(self.discount_amount),
            "valid_from": self.valid_from.isoformat(),
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "max_usage": self.max_usage,
            "usage_count": self.usage_count,
            "remaining_balance": str(self.remaining_balance) if self.remaining_balance is not None else None,
            "is_usable": self.is_usable,
        }


@dataclass
class RewardOutcome:
    """
    Result of the reward step for one completed order.

    Attributes:
        status: NO_REFERRAL, ALREADY_REWARDED, ALREADY_CLAIMED, ISSUED or REWARD_FAILED.
        redemption_id: Referral redemption that was claimed, if any.
        reward_code: Minted reward code string when status is ISSUED.
    """

    NO_REFERRAL = "no_referral"
    ALREADY_REWARDED = "already_rewarded"
    ALREADY_CLAIMED = "already_claimed"
    ISSUED = "issued"
    REWARD_FAILED = "reward_failed"

    status: str
    redemption_id: str | None = None
    reward_code: str | None = None

    @property
    def issued(self) -> bool:
        return self.status == self.ISSUED


@dataclass
class ReconciliationOutcome:
    """Per-code results of reconciling one completed order."""

    order_id: str
    reconciled: list[str] = field(default_factory=list)
    unmatched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class OrderCompletionResult:
    """Acknowledgement returned to the order-completion dispatcher."""

    order_id: str
    acknowledged: bool = True
    reward: RewardOutcome | None = None
    reconciliation: ReconciliationOutcome | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "acknowledged": self.acknowledged,
            "order_id": self.order_id,
            "reward_status": self.reward.status if self.reward else None,
            "reward_code_issued": bool(self.reward and self.reward.issued),
            "reconciled_codes": self.reconciliation.reconciled if self.reconciliation else [],
            "unmatched_codes": self.reconciliation.unmatched if self.reconciliation else [],
            "failed_codes": self.reconciliation.failed if self.reconciliation else [],
            "errors": self.errors,
        }


@dataclass(frozen=True)
class ReferralStats:
    referral_code: str | None
    total_referrals: int = 0
    successful_referrals: int = 0
    pending_referrals: int = 0
    earned_rewards: int = 0


@dataclass(frozen=True)
class OrderCompletedEvent:
    """Completed-order notification from the payment subsystem."""

    buyer_id: UserId
    order_id: str
    applied_codes: tuple[str, ...] = ()
    applied_discount_amount: Decimal = Decimal("0.00")

    @classmethod
    def from_payload(cls, payload: Any) -> OrderCompletedEvent:
        """Validate a decoded webhook body. Raises ValidationError on malformed input."""
        if not isinstance(payload, dict):
            raise ValidationError("Event payload must be an object")

        applied = payload.get("applied_codes") or []
        if isinstance(applied, str):
            applied = [applied]
        if not isinstance(applied, list) or not all(isinstance(item, str) for item in applied):
            raise ValidationError("applied_codes must be a list of strings", field="applied_codes")

        return cls(
            buyer_id=_require_id(payload.get("buyer_id"), "buyer_id"),
            order_id=_require_id(payload.get("order_id"), "order_id", ORDER_ID_MAX_LENGTH),
            applied_codes=tuple(applied),
            applied_discount_amount=to_amount(payload.get("applied_discount_amount") or 0),
        )


# ===============================================================================
# Code Registry
# ===============================================================================


class CodeRegistryService:
    """
    Creates and looks up code records.
    Owns the code format and validity window rules.
    """

    @staticmethod
    def normalize_code(code: Any) -> str:
        """Trim and upper-case a user-supplied code. Raises ValidationError for malformed input."""
        if not isinstance(code, str):
            raise ValidationError("Code is required", field="code")
        normalized = code.strip().upper()
        if not CODE_PATTERN.match(normalized):
            raise ValidationError("Code must be 3-50 letters, digits, '-' or '_'", field="code")
        return normalized

    @staticmethod
    def _referral_candidate(user_id: str, attempt: int) -> str:
        """Reproducible code string for a user; later attempts salt the digest."""
        prefix = promotions_setting("REFERRAL_CODE_PREFIX")
        stem = re.sub(r"[^A-Z0-9]", "", user_id.upper())[:REFERRAL_STEM_LENGTH]
        seed = user_id if attempt == 0 else f"{user_id}:{attempt}"
        digest = int.from_bytes(hashlib.sha256(seed.encode("utf-8")).digest()[:8], "big")
        return f"{prefix}{stem}{_to_base36(digest, REFERRAL_HASH_LENGTH)}"

    @staticmethod
    def _owned_referral_code(user_id: str) -> str | None:
        return (
            DiscountCode.objects.filter(kind=DiscountCode.KIND_REFERRAL, owner_id=user_id)
            .values_list("code", flat=True)
            .first()
        )

    @classmethod
    def get_or_create_referral_code(cls, user_id: UserId) -> str:
        """
        Return the user's referral code, creating it on first use.

        Idempotent: an existing code is returned unchanged even when it has
        been redeemed many times. Candidate strings are derived from the user
        id, so a retried call regenerates the same candidates.

        Raises:
            ValidationError: user_id missing or malformed.
            RegistryError: no free candidate within CODE_GENERATION_MAX_ATTEMPTS.
            StoreUnavailableError: store unreachable.
        """
        user_id = _require_id(user_id, "user_id")

        with store_guard("get_or_create_referral_code"):
            existing = cls._owned_referral_code(user_id)
            if existing:
                return existing

            now = timezone.now()
            validity = timedelta(days=365 * int(promotions_setting("REFERRAL_VALIDITY_YEARS")))
            max_attempts = int(promotions_setting("CODE_GENERATION_MAX_ATTEMPTS"))

            for attempt in range(max_attempts):
                candidate = cls._referral_candidate(user_id, attempt)
                try:
                    with transaction.atomic():
                        DiscountCode.objects.create(
                            code=candidate,
                            kind=DiscountCode.KIND_REFERRAL,
                            owner_id=user_id,
                            discount_type=DiscountCode.TYPE_PERCENT,
                            discount_amount=Decimal("0.00"),
                            valid_from=now,
                            valid_until=now + validity,
                            max_usage=None,
                            name=f"Referral code for {user_id}",
                        )
                except IntegrityError:
                    # Either a concurrent request created this owner's code or the candidate is taken
                    winner = cls._owned_referral_code(user_id)
                    if winner:
                        return winner
                    logger.warning(
                        "⚠️ [Promotions] Referral code collision for %s on attempt %d", user_id, attempt + 1
                    )
                    continue

                logger.info("✅ [Promotions] Referral code %s created for %s", candidate, user_id)
                return candidate

        raise RegistryError(f"Unable to generate a unique referral code after {max_attempts} attempts")

    @classmethod
    def lookup_active_code(cls, code_string: str, *, for_update: bool = False) -> DiscountCode | None:
        """
        Resolve a code string to a currently valid row.

        Returns None for misses and for inactive, not-yet-valid or expired
        codes. Usage limits are not checked here.
        """
        normalized = cls.normalize_code(code_string)

        with store_guard("lookup_active_code"):
            queryset = DiscountCode.objects.all()
            if for_update:
                queryset = queryset.select_for_update()
            code = queryset.filter(code=normalized).first()

        if code is None or not code.is_currently_valid():
            return None
        return code

    @classmethod
    def create_reward_code(cls, owner_id: UserId, source_redemption_id: uuid.UUID | str) -> DiscountCode:
        """
        Mint the single-use reward code for a referral redemption.

        The code string is derived from the redemption id, so calling this
        again for the same redemption returns the existing reward instead of
        minting a second one.
        """
        owner_id = _require_id(owner_id, "owner_id")
        digest = hashlib.sha256(str(source_redemption_id).encode("utf-8")).hexdigest()[:REWARD_HASH_LENGTH]
        code_string = f"{promotions_setting('REWARD_CODE_PREFIX')}{digest.upper()}"
        now = timezone.now()

        reward, created = DiscountCode.objects.get_or_create(
            code=code_string,
            defaults={
                "kind": DiscountCode.KIND_REWARD,
                "owner_id": owner_id,
                "discount_type": DiscountCode.TYPE_PERCENT,
                "discount_amount": to_amount(promotions_setting("REWARD_DISCOUNT_PERCENT")),
                "valid_from": now,
                "valid_until": now + timedelta(days=int(promotions_setting("REWARD_VALIDITY_DAYS"))),
                "max_usage": 1,
                "name": f"Referral reward for {owner_id}",
            },
        )
        if not created and (reward.kind != DiscountCode.KIND_REWARD or reward.owner_id != owner_id):
            raise RegistryError(f"Reward code {code_string} already exists for another owner")

        if created:
            logger.info("🎁 [Promotions] Reward code %s created for %s", reward.code, owner_id)
        return reward

    # ---------------------------------------------------------------------------
    # Staff administration
    # ---------------------------------------------------------------------------

    @staticmethod
    def _clamp_max_usage(value: Any) -> int | None:
        if value is None or value == "":
            return None
        try:
            return max(1, min(int(value), MAX_USAGE_LIMIT))
        except (TypeError, ValueError) as e:
            raise ValidationError("max_usage must be a whole number", field="max_usage") from e

    @staticmethod
    def _full_clean(code: DiscountCode) -> None:
        try:
            code.full_clean(validate_unique=False, validate_constraints=False)
        except DjangoValidationError as e:
            field_name = next(iter(e.message_dict), None) if hasattr(e, "error_dict") else None
            raise ValidationError("; ".join(e.messages), field=field_name) from e

    @classmethod
    @transaction.atomic
    def create_promotional_code(  # noqa: PLR0913
        cls,
        *,
        code: str,
        discount_amount: Any,
        discount_type: str = DiscountCode.TYPE_PERCENT,
        max_usage: Any = 1,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        has_balance_limit: bool = False,
        initial_balance: Any = None,
        owner_id: str = "",
        name: str = "",
        description: str = "",
    ) -> DiscountCode:
        """Create a staff-managed promotional code. Raises DuplicateCodeError if the string is taken."""
        normalized = cls.normalize_code(code)
        if discount_type not in dict(DiscountCode.DISCOUNT_TYPES):
            raise ValidationError("discount_type must be 'percent' or 'fixed'", field="discount_type")
        amount = to_amount(discount_amount)
        if discount_type == DiscountCode.TYPE_PERCENT and amount > MAX_DISCOUNT_PERCENT:
            raise ValidationError("Percentage discount must be between 0 and 100", field="discount_amount")

        balance = None
        if has_balance_limit:
            if initial_balance is None:
                raise ValidationError("Balance-limited codes need an initial balance", field="initial_balance")
            balance = to_amount(initial_balance)

        discount_code = DiscountCode(
            code=normalized,
            kind=DiscountCode.KIND_PROMOTIONAL,
            discount_type=discount_type,
            discount_amount=amount,
            max_usage=cls._clamp_max_usage(max_usage),
            valid_from=valid_from or timezone.now(),
            valid_until=valid_until,
            owner_id=owner_id or "",
            has_balance_limit=bool(has_balance_limit),
            initial_balance=balance,
            remaining_balance=balance,
            name=name or normalized,
            description=description,
        )
        cls._full_clean(discount_code)

        with store_guard("create_promotional_code"):
            try:
                with transaction.atomic():
                    discount_code.save()
            except IntegrityError as e:
                raise DuplicateCodeError(f"Code {normalized} already exists") from e

        return discount_code

    UPDATABLE_FIELDS = frozenset(
        {
            "name",
            "description",
            "discount_type",
            "discount_amount",
            "valid_from",
            "valid_until",
            "max_usage",
            "is_active",
            "has_balance_limit",
            "initial_balance",
            "remaining_balance",
        }
    )

    @classmethod
    @transaction.atomic
    def update_promotional_code(cls, code_id: uuid.UUID | str, **changes: Any) -> DiscountCode:  # noqa: C901
        """
        Apply staff edits to a code under a row lock.

        Referral and reward codes carry fixed terms and are refused. The code
        string and kind never change. Counters can't be pushed below what has
        already been consumed.
        """
        unknown = set(changes) - cls.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        with store_guard("update_promotional_code"):
            discount_code = DiscountCode.objects.select_for_update().filter(pk=code_id).first()
        if discount_code is None:
            raise RegistryError(f"Code {code_id} not found")
        if discount_code.kind != DiscountCode.KIND_PROMOTIONAL:
            raise ValidationError(
                f"Only promotional codes can be edited, {discount_code.code} is a {discount_code.kind} code"
            )

        for money_field in ("discount_amount", "initial_balance", "remaining_balance"):
            if money_field in changes and changes[money_field] is not None:
                changes[money_field] = to_amount(changes[money_field])
        if "max_usage" in changes:
            changes["max_usage"] = cls._clamp_max_usage(changes["max_usage"])
            if changes["max_usage"] is not None and changes["max_usage"] < discount_code.usage_count:
                raise ValidationError("max_usage cannot be lower than the current usage count", field="max_usage")

        for name, value in changes.items():
            setattr(discount_code, name, value)

        if discount_code.has_balance_limit:
            if discount_code.initial_balance is None:
                raise ValidationError("Balance-limited codes need an initial balance", field="initial_balance")
            if discount_code.remaining_balance is None:
                discount_code.remaining_balance = discount_code.initial_balance
            if not Decimal("0") <= discount_code.remaining_balance <= discount_code.initial_balance:
                raise ValidationError(
                    "remaining_balance must be between 0 and initial_balance", field="remaining_balance"
                )

        cls._full_clean(discount_code)
        discount_code.version = F("version") + 1
        with store_guard("update_promotional_code"):
            discount_code.save()
        discount_code.refresh_from_db()
        return discount_code

    @classmethod
    def get_code(cls, code_id: uuid.UUID | str) -> DiscountCode | None:
        with store_guard("get_code"):
            return DiscountCode.objects.filter(pk=code_id).first()

    @classmethod
    def list_codes(cls, kind: str | None = None, limit: int = DEFAULT_LIST_LIMIT) -> list[DiscountCode]:
        if kind is not None and kind not in dict(DiscountCode.KINDS):
            raise ValidationError(f"Unknown code kind: {kind}", field="kind")
        queryset = DiscountCode.objects.all()
        if kind:
            queryset = queryset.filter(kind=kind)
        with store_guard("list_codes"):
            return list(queryset.order_by("-created_at")[: max(1, min(limit, DEFAULT_LIST_LIMIT * 10))])

    # ---------------------------------------------------------------------------
    # Owner views
    # ---------------------------------------------------------------------------

    @classmethod
    def list_owned_reward_codes(cls, user_id: UserId) -> list[CodeSummary]:
        """Reward codes earned by a referrer, newest first."""
        user_id = _require_id(user_id, "user_id")
        with store_guard("list_owned_reward_codes"):
            codes = DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD, owner_id=user_id).order_by(
                "-created_at"
            )
            return [CodeSummary.from_code(code) for code in codes]

    @classmethod
    def get_owned_referral_code(cls, user_id: UserId) -> list[CodeSummary]:
        """The user's referral code as a one-element list, or an empty list if none was created yet."""
        user_id = _require_id(user_id, "user_id")
        with store_guard("get_owned_referral_code"):
            codes = DiscountCode.objects.filter(kind=DiscountCode.KIND_REFERRAL, owner_id=user_id)
            return [CodeSummary.from_code(code) for code in codes]


# ===============================================================================
# Redemption Ledger
# ===============================================================================


class RedemptionLedgerService:
    """
    Records checkout-time code applications.

    Redeeming never touches usage counters or balances; that happens only
    after payment, so an abandoned checkout costs nothing but a ledger row.
    """

    @staticmethod
    def _pending_redemption_id(code: DiscountCode, redeemer_id: str) -> str | None:
        pending = (
            CodeRedemption.objects.filter(code=code, redeemer_id=redeemer_id, status=CodeRedemption.STATUS_PENDING)
            .values_list("id", flat=True)
            .first()
        )
        return str(pending) if pending else None

    @staticmethod
    def _is_exhausted(code: DiscountCode) -> bool:
        if code.is_depleted:
            return True
        if code.max_usage is None:
            return False
        return CodeRedemption.objects.filter(code=code).count() >= code.max_usage

    @classmethod
    def redeem(cls, code_string: str, redeemer_id: UserId) -> Result[str, RedemptionError]:
        """
        Apply a code at checkout.

        Returns Ok(redemption_id) or Err(RedemptionError). A repeated call by
        the same redeemer while their redemption is still pending returns the
        same id. Raises ValidationError for malformed input and
        StoreUnavailableError when the store is unreachable.
        """
        redeemer_id = _require_id(redeemer_id, "redeemer_id")
        normalized = CodeRegistryService.normalize_code(code_string)

        with store_guard("redeem"), transaction.atomic():
            code = CodeRegistryService.lookup_active_code(normalized, for_update=True)
            if code is None:
                return Err(RedemptionError.INVALID_CODE)

            if code.kind == DiscountCode.KIND_REWARD:
                # Reward codes belong to the referrer and are invisible to everyone else
                if code.owner_id != redeemer_id:
                    return Err(RedemptionError.INVALID_CODE)
            elif code.owner_id and code.owner_id == redeemer_id:
                return Err(RedemptionError.SELF_REDEMPTION_NOT_ALLOWED)

            existing = cls._pending_redemption_id(code, redeemer_id)
            if existing:
                return Ok(existing)

            if cls._is_exhausted(code):
                return Err(RedemptionError.CODE_EXHAUSTED)

            try:
                with transaction.atomic():
                    redemption = CodeRedemption.objects.create(
                        code=code,
                        redeemer_id=redeemer_id,
                        is_single_use=code.is_single_use,
                    )
            except IntegrityError:
                existing = cls._pending_redemption_id(code, redeemer_id)
                if existing:
                    return Ok(existing)
                logger.info("🔒 [Promotions] Lost single-use race for %s", code.code)
                return Err(RedemptionError.CODE_EXHAUSTED)

            AuditService.log_simple_event(
                "code_redeemed",
                actor_id=redeemer_id,
                content_object=redemption,
                description=f"Code {code.code} redeemed",
                new_values={"code": code.code, "kind": code.kind, "status": redemption.status},
            )

        logger.info("✅ [Promotions] Code %s redeemed by %s", code.code, redeemer_id)
        return Ok(str(redemption.id))

    @classmethod
    def link_order(cls, redemption_id: uuid.UUID | str, order_id: str, *, redeemer_id: UserId | None = None) -> bool:
        """
        Attach the order id once payment starts.

        Conditional write: succeeds for a pending redemption with no order or
        the same order, never re-links to a different one.
        """
        order_id = _require_id(order_id, "order_id", ORDER_ID_MAX_LENGTH)
        try:
            redemption_uuid = uuid.UUID(str(redemption_id))
        except ValueError as e:
            raise ValidationError("redemption_id must be a UUID", field="redemption_id") from e

        queryset = CodeRedemption.objects.filter(pk=redemption_uuid, status=CodeRedemption.STATUS_PENDING).filter(
            Q(order_id__isnull=True) | Q(order_id=order_id)
        )
        if redeemer_id is not None:
            queryset = queryset.filter(redeemer_id=redeemer_id)

        with store_guard("link_order"):
            linked = queryset.update(order_id=order_id) == 1
            if linked:
                AuditService.log_simple_event(
                    "redemption_linked",
                    actor_id=redeemer_id,
                    content_object=CodeRedemption.objects.get(pk=redemption_uuid),
                    description=f"Redemption linked to order {order_id}",
                    new_values={"order_id": order_id},
                )

        if not linked:
            logger.info("⚠️ [Promotions] Redemption %s not linkable to order %s", redemption_uuid, order_id)
        return linked


# ===============================================================================
# Reward Issuer
# ===============================================================================


class RewardIssuerService:
    """Mints exactly one reward code per qualifying referral redemption."""

    @staticmethod
    def _candidate(buyer_id: str, order_id: str) -> CodeRedemption | None:
        # Redemptions already linked to this order win over unlinked ones
        return (
            CodeRedemption.objects.select_related("code")
            .filter(
                redeemer_id=buyer_id,
                code__kind=DiscountCode.KIND_REFERRAL,
                reward_issued_at__isnull=True,
            )
            .filter(Q(order_id__isnull=True) | Q(order_id=order_id))
            .order_by(F("order_id").asc(nulls_last=True), "-redeemed_at")
            .first()
        )

    @classmethod
    def issue_for_order(cls, buyer_id: UserId, order_id: str) -> RewardOutcome:
        """
        Reward the referrer behind this buyer's referral redemption.

        The claim is a single conditional write committed on its own, so a
        redelivered event cannot issue twice. A reward that fails to mint
        after the claim is logged and audited for manual remediation; it
        never fails the order.
        """
        buyer_id = _require_id(buyer_id, "buyer_id")
        order_id = _require_id(order_id, "order_id", ORDER_ID_MAX_LENGTH)

        already_rewarded = CodeRedemption.objects.filter(
            redeemer_id=buyer_id,
            order_id=order_id,
            code__kind=DiscountCode.KIND_REFERRAL,
            reward_issued_at__isnull=False,
        ).exists()
        if already_rewarded:
            logger.info("🔁 [Promotions] Order %s already rewarded, skipping", order_id)
            return RewardOutcome(status=RewardOutcome.ALREADY_REWARDED)

        redemption = cls._candidate(buyer_id, order_id)
        if redemption is None:
            return RewardOutcome(status=RewardOutcome.NO_REFERRAL)

        now = timezone.now()
        claimed = (
            CodeRedemption.objects.filter(pk=redemption.pk, reward_issued_at__isnull=True)
            .filter(Q(order_id__isnull=True) | Q(order_id=order_id))
            .update(
                order_id=order_id,
                status=CodeRedemption.STATUS_REWARDED,
                linked_at=Coalesce(F("linked_at"), Value(now)),
                reward_issued_at=now,
            )
        )
        if not claimed:
            logger.info("🔁 [Promotions] Redemption %s claimed by a concurrent delivery", redemption.pk)
            return RewardOutcome(status=RewardOutcome.ALREADY_CLAIMED, redemption_id=str(redemption.pk))

        referrer_id = redemption.code.owner_id
        try:
            with transaction.atomic():
                reward = CodeRegistryService.create_reward_code(referrer_id, redemption.pk)
                CodeRedemption.objects.filter(pk=redemption.pk).update(reward_code=reward)
        except Exception as e:
            logger.exception(
                "🔥 [Promotions] Reward claimed but not issued for redemption %s (order %s, referrer %s)",
                redemption.pk,
                order_id,
                referrer_id,
            )
            AuditService.log_simple_event(
                "reward_issue_failed",
                actor_type="system",
                content_object=redemption,
                description="Reward claimed but reward code creation failed; needs manual remediation",
                metadata={"order_id": order_id, "referrer_id": referrer_id, "error": str(e)},
            )
            return RewardOutcome(status=RewardOutcome.REWARD_FAILED, redemption_id=str(redemption.pk))

        logger.info(
            "🎁 [Promotions] Reward %s issued to %s for order %s", reward.code, referrer_id, order_id
        )
        return RewardOutcome(status=RewardOutcome.ISSUED, redemption_id=str(redemption.pk), reward_code=reward.code)


# ===============================================================================
# Usage & Balance Reconciler
# ===============================================================================


@dataclass
class _CodeReconciliation:
    code: str
    matched: bool | None
    balance_before: Decimal | None = None
    balance_after: Decimal | None = None


class UsageReconciliationService:
    """Turns pending non-referral redemptions into durable usage and balance accounting."""

    RECONCILED_KINDS = (DiscountCode.KIND_PROMOTIONAL, DiscountCode.KIND_REWARD)

    @classmethod
    def _pending_redemptions(cls, buyer_id: str, order_id: str) -> list[CodeRedemption]:
        return list(
            CodeRedemption.objects.select_related("code")
            .filter(
                redeemer_id=buyer_id,
                status=CodeRedemption.STATUS_PENDING,
                code__kind__in=cls.RECONCILED_KINDS,
            )
            .filter(Q(order_id__isnull=True) | Q(order_id=order_id))
            .order_by("redeemed_at")
        )

    @staticmethod
    def _reconcile_one(
        redemption: CodeRedemption,
        order_id: str,
        applied_codes: tuple[str, ...],
        amount: Decimal,
    ) -> _CodeReconciliation | None:
        """Claim one redemption and count it against its code. Caller owns the transaction."""
        now = timezone.now()
        claimed = (
            CodeRedemption.objects.filter(pk=redemption.pk, status=CodeRedemption.STATUS_PENDING)
            .filter(Q(order_id__isnull=True) | Q(order_id=order_id))
            .update(status=CodeRedemption.STATUS_LINKED, order_id=order_id, linked_at=now)
        )
        if not claimed:
            return None

        code = DiscountCode.objects.get(pk=redemption.code_id)
        changes: dict[str, Any] = {
            "usage_count": F("usage_count") + 1,
            "version": F("version") + 1,
            "updated_at": now,
        }
        result = _CodeReconciliation(code=code.code, matched=None)

        if code.has_balance_limit:
            result.matched = order_applies_code(code.code, applied_codes)
            if result.matched:
                before = code.remaining_balance or Decimal("0.00")
                result.balance_before = before
                result.balance_after = max(Decimal("0.00"), before - amount)
                changes["remaining_balance"] = result.balance_after

        updated = DiscountCode.objects.filter(pk=code.pk, version=code.version).update(**changes)
        if not updated:
            raise ConcurrencyConflictError(f"Code {code.code} changed concurrently")
        return result

    @classmethod
    def _reconcile_with_retry(
        cls,
        redemption: CodeRedemption,
        order_id: str,
        applied_codes: tuple[str, ...],
        amount: Decimal,
    ) -> _CodeReconciliation | None:
        max_retries = max(1, int(promotions_setting("RECONCILE_MAX_RETRIES")))
        for attempt in range(1, max_retries + 1):
            try:
                with transaction.atomic():
                    return cls._reconcile_one(redemption, order_id, applied_codes, amount)
            except ConcurrencyConflictError:
                if attempt == max_retries:
                    raise
                logger.info(
                    "🔁 [Promotions] Version conflict on %s, retry %d/%d", redemption.code.code, attempt, max_retries
                )
        return None

    @classmethod
    def reconcile_order(
        cls,
        buyer_id: UserId,
        order_id: str,
        applied_codes: Iterable[str] = (),
        applied_discount_amount: Any = 0,
    ) -> ReconciliationOutcome:
        """
        Count usage and debit balances for the buyer's pending non-referral redemptions.

        A balance debit needs the order's applied codes to name the code; a
        mismatch skips the debit but still counts usage. Each code is
        independent: a failure is logged and audited and the loop moves on.
        """
        buyer_id = _require_id(buyer_id, "buyer_id")
        order_id = _require_id(order_id, "order_id", ORDER_ID_MAX_LENGTH)
        applied = tuple(applied_codes)
        amount = to_amount(applied_discount_amount)
        outcome = ReconciliationOutcome(order_id=order_id)

        for redemption in cls._pending_redemptions(buyer_id, order_id):
            code_string = redemption.code.code
            try:
                result = cls._reconcile_with_retry(redemption, order_id, applied, amount)
                if result is None:
                    continue
                outcome.reconciled.append(code_string)

                if result.matched is False:
                    outcome.unmatched.append(code_string)
                    logger.warning(
                        "⚠️ [Promotions] Order %s does not list balance-limited code %s; usage counted, balance untouched",
                        order_id,
                        code_string,
                        extra={"applied_codes": list(applied)},
                    )
                    AuditService.log_simple_event(
                        "code_order_mismatch",
                        actor_type="system",
                        content_object=redemption.code,
                        description=f"Order {order_id} did not list {code_string}; balance not debited",
                        metadata={"order_id": order_id, "applied_codes": list(applied), "amount": amount},
                    )
                else:
                    AuditService.log_simple_event(
                        "code_usage_reconciled",
                        actor_type="system",
                        content_object=redemption.code,
                        description=f"Usage counted for order {order_id}",
                        old_values={"remaining_balance": result.balance_before} if result.matched else None,
                        new_values={"remaining_balance": result.balance_after} if result.matched else None,
                        metadata={"order_id": order_id, "redemption_id": redemption.pk},
                    )
            except (ConcurrencyConflictError, DatabaseError) as e:
                outcome.failed.append(code_string)
                logger.error(
                    "🔥 [Promotions] Failed to reconcile %s for order %s: %s", code_string, order_id, e
                )
                try:
                    AuditService.log_simple_event(
                        "code_reconcile_failed",
                        actor_type="system",
                        content_object=redemption,
                        description=f"Reconciliation failed for order {order_id}",
                        metadata={"order_id": order_id, "code": code_string, "error": str(e)},
                    )
                except DatabaseError:
                    logger.exception("🔥 [Promotions] Could not audit reconcile failure for %s", code_string)

        if outcome.reconciled:
            logger.info(
                "✅ [Promotions] Order %s reconciled %d code(s) for %s", order_id, len(outcome.reconciled), buyer_id
            )
        return outcome


# ===============================================================================
# Order Completion
# ===============================================================================


class OrderCompletionService:
    """Runs the post-payment steps for a completed order and always acknowledges."""

    @classmethod
    def on_order_completed(cls, event: OrderCompletedEvent) -> OrderCompletionResult:
        """
        Issue referral rewards, then reconcile usage and balances.

        Both steps are idempotent, so redelivery of the same event is safe.
        Failures are reported in the result, never raised.
        """
        result = OrderCompletionResult(order_id=event.order_id)

        try:
            result.reward = RewardIssuerService.issue_for_order(event.buyer_id, event.order_id)
        except (DatabaseError, BusinessError) as e:
            logger.error("🔥 [Promotions] Reward step failed for order %s: %s", event.order_id, e)
            result.errors.append(f"reward: {e}")

        try:
            result.reconciliation = UsageReconciliationService.reconcile_order(
                event.buyer_id,
                event.order_id,
                event.applied_codes,
                event.applied_discount_amount,
            )
        except (DatabaseError, BusinessError) as e:
            logger.error("🔥 [Promotions] Reconciliation step failed for order %s: %s", event.order_id, e)
            result.errors.append(f"reconciliation: {e}")

        return result


# ===============================================================================
# Referral Stats
# ===============================================================================


class ReferralStatsService:
    """Dashboard statistics for a referrer."""

    @classmethod
    def get_referral_stats(cls, user_id: UserId) -> ReferralStats:
        user_id = _require_id(user_id, "user_id")

        with store_guard("get_referral_stats"):
            referral_code = (
                DiscountCode.objects.filter(kind=DiscountCode.KIND_REFERRAL, owner_id=user_id).only("id", "code").first()
            )
            earned = DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD, owner_id=user_id).count()
            if referral_code is None:
                return ReferralStats(referral_code=None, earned_rewards=earned)

            redemptions = CodeRedemption.objects.filter(code=referral_code)
            total = redemptions.count()
            successful = redemptions.filter(reward_issued_at__isnull=False).count()

        return ReferralStats(
            referral_code=referral_code.code,
            total_referrals=total,
            successful_referrals=successful,
            pending_referrals=total - successful,
            earned_rewards=earned,
        )
