"""
Shared type system for the code ledger.
Rust-inspired Result pattern plus the business error hierarchy used by every app.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Generic, TypeVar

# Type variables for generic Result
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type

# Opaque subject id handed out by the identity provider
UserId = str

# ===============================================================================
# RESULT TYPES
# ===============================================================================


@dataclass(frozen=True)
class Ok(Generic[T]):
    """Success result containing a value"""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the success value"""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Get the success value (ignores default)"""
        return self.value

    def map(self, func: Callable[[T], Any]) -> Result[Any, Any]:
        """Transform the success value"""
        return Ok(func(self.value))

    def and_then(self, func: Callable[[T], Result[Any, Any]]) -> Result[Any, Any]:
        """Chain operations that can fail"""
        return func(self.value)

    def unwrap_err(self) -> Any:
        raise ValueError(f"Called unwrap_err on Ok: {self.value}")


@dataclass(frozen=True)
class Err(Generic[E]):
    """Error result containing an error value"""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> Any:
        """Raises an exception - use unwrap_or() for safe access"""
        raise ValueError(f"Called unwrap on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, func: Callable[[Any], Any]) -> Result[Any, E]:
        """No-op for error results"""
        return self

    def and_then(self, func: Callable[[Any], Result[Any, Any]]) -> Result[Any, E]:
        """No-op for error results - return self"""
        return self

    def unwrap_err(self) -> E:
        """Get the error value"""
        return self.error


# Result type alias
Result = Ok[T] | Err[E]


# ===============================================================================
# MONEY HELPERS
# ===============================================================================

CENT = Decimal("0.01")
# Money columns are DecimalField(max_digits=12, decimal_places=2)
MAX_AMOUNT = Decimal("10000000000")


def to_amount(value: Any) -> Decimal:
    """Coerce a numeric input into a two-decimal Decimal.

    Raises ValidationError for anything that is not a finite, non-negative number.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Amount must be a non-negative number, got {value!r}")
    if amount >= MAX_AMOUNT:
        raise ValidationError(f"Amount out of range, got {value!r}")
    try:
        return amount.quantize(CENT)
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e


# ===============================================================================
# BUSINESS EXCEPTIONS
# ===============================================================================


class BusinessError(Exception):
    """Base class for business logic errors"""


class ValidationError(BusinessError):
    """Input rejected before any store access"""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

